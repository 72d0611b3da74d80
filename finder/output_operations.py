import sys

def format_matches(matches):
    """Render matches as one comma separated line: x,y,x,y,..."""
    return ",".join(f"{x},{y}" for x, y in matches)

def print_matches(matches, file=None):
    """Print the matches on one line; print nothing at all when there are none"""
    if not matches:
        return
    print(format_matches(matches), file=file or sys.stdout)
