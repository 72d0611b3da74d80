#!/usr/bin/env python3

import argparse
import sys
import os

# Add the parent directory to sys.path to allow absolute imports
current_dir = os.path.dirname(os.path.abspath(__file__))
parent_dir = os.path.dirname(current_dir)
if parent_dir not in sys.path:
    sys.path.insert(0, parent_dir)

from finder.image_operations import makesample
from finder.search_operations import search_images
from finder.testing import run_unit_tests


def print_usage():
    """Print usage information"""
    print("Finder - Sub-image search tools")
    print("\nUsage examples:")
    print("  --search '{\"big\":\"<string>\",\"small\":\"<string>\",\"tolerance\":[<r>,<g>,<b>],\"threshold\":<int>,\"max\":<int>}' [--device <device>] [--verbose]")
    print("    Example: --search '{\"big\":\"screen.png\",\"small\":\"button.png\",\"tolerance\":[4,4,4],\"max\":1}'")
    print("    Prints matching top-left corners as x,y,x,y,...")
    print()
    print("  --makesample '{\"image\":\"<string>\",\"x\":<int>,\"y\":<int>,\"w\":<int>,\"h\":<int>}'")
    print("    Example: --makesample '{\"image\":\"screen.png\",\"x\":10,\"y\":20,\"w\":50,\"h\":30}'")
    print("    Saves the region to screen.samples/10_20_50_30.png")
    print()
    print("  --unittest")
    print("    Run unit tests")

def main(argv=None):
    parser = argparse.ArgumentParser(description='Finder - Sub-image search tools')
    parser.add_argument('--search', type=str, help='Search for a small image inside a big one from JSON parameters')
    parser.add_argument('--makesample', type=str, help='Cut a sample subimage from JSON parameters')
    parser.add_argument('--device', type=str, help='Torch device for the tensor search (default: cuda if available)')
    parser.add_argument('--verbose', action='store_true', help='Print progress to stderr')
    parser.add_argument('--unittest', action='store_true', help='Run unit tests')

    args = parser.parse_args(argv)

    try:
        if args.unittest:
            run_unit_tests()
        elif args.search:
            search_images(args.search, args.device, args.verbose)
        elif args.makesample:
            makesample(args.makesample)
        else:
            print_usage()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

if __name__ == "__main__":
    main()
