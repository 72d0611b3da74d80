import json
import sys
from pathlib import Path
from PIL import Image
import numpy as np
import torch

def parse_json_string(json_str, operation_name='search'):
    """Parse JSON string with error handling"""
    try:
        return json.loads(json_str)
    except json.JSONDecodeError as e:
        print(f"Error parsing JSON: {e}")
        print(f"Expected format: {get_expected_format(operation_name)}")
        sys.exit(1)

def validate_required_params(params, required_keys, operation_name):
    """Validate that all required parameters are present"""
    missing_keys = [key for key in required_keys if key not in params]
    if missing_keys:
        print(f"Missing required parameters for {operation_name}: {missing_keys}")
        print(f"Expected format: {get_expected_format(operation_name)}")
        sys.exit(1)

def parse_json_params(json_str, required_keys, operation_name):
    """Parse and validate JSON parameters"""
    params = parse_json_string(json_str, operation_name)
    validate_required_params(params, required_keys, operation_name)
    return params

def get_expected_format(operation_name):
    """Return expected JSON format for each operation"""
    formats = {
        'search': '{"big":"<string>","small":"<string>","tolerance":[<r>,<g>,<b>],"threshold":<integer>,"max":<integer>,"method":"tensor|scalar"}',
        'makesample': '{"image":"<string>","x":<integer>,"y":<integer>,"w":<integer>,"h":<integer>}',
    }
    return formats.get(operation_name, "Check documentation")


class PixelGrid:
    """Read-only RGB pixel grid.

    Wraps an H x W x 3 uint8 array. ``pixel_at`` does no bounds checking;
    the search engine only asks for pixels inside the candidate window
    bounds, which always lie inside the grid.
    """

    def __init__(self, pixels):
        arr = np.asarray(pixels)
        if arr.ndim != 3 or arr.shape[2] != 3:
            raise ValueError(f"Expected an H x W x 3 pixel array, got shape {arr.shape}")
        if arr.shape[0] == 0 or arr.shape[1] == 0:
            raise ValueError("Image dimensions must be positive")
        if np.issubdtype(arr.dtype, np.integer) and (arr.min() < 0 or arr.max() > 255):
            raise ValueError("Channel values must be in the range 0-255")

        self.pixels = np.array(arr, dtype=np.uint8)
        self.pixels.flags.writeable = False
        self._rows = [None] * self.height

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def size(self):
        return self.width, self.height

    def pixel_at(self, x: int, y: int):
        # Rows are cached as bytes on first use: as compact as the array,
        # and much faster to index than numpy scalars in a tight loop
        row = self._rows[y]
        if row is None:
            row = self._rows[y] = self.pixels[y].tobytes()
        i = 3 * x
        return row[i], row[i + 1], row[i + 2]

    def to_tensor(self, device) -> torch.Tensor:
        """Copy pixels to a signed tensor on ``device`` so channel differences cannot wrap."""
        return torch.from_numpy(self.pixels.astype(np.int16)).to(device)

    def crop(self, x, y, w, h):
        validate_image_bounds(self, x, y, w, h)
        return PixelGrid(self.pixels[y:y + h, x:x + w])

    @classmethod
    def from_image(cls, img):
        return cls(np.array(convert_image_to_rgb(img), dtype=np.uint8))

    def __repr__(self):
        return f"PixelGrid({self.width}x{self.height})"


def convert_image_to_rgb(img):
    """Convert image to RGB mode if needed"""
    if img.mode != 'RGB':
        return img.convert('RGB')
    return img

def handle_image_load_error(error, image_path):
    """Handle image loading errors consistently"""
    if isinstance(error, FileNotFoundError):
        raise ValueError(f"Image file does not exist: {image_path}")
    if isinstance(error, IsADirectoryError):
        raise ValueError(f"Image path is a directory: {image_path}")
    if "cannot identify image file" in str(error).lower():
        raise ValueError(f"Cannot read image file: {image_path}")
    if isinstance(error, OSError):
        raise ValueError(f"Cannot read image file {image_path}: {error}")
    raise error

def load_image(image_path):
    """Load an image file as an RGB PixelGrid, dropping any alpha channel"""
    # Disable decompression bomb protection for large images
    Image.MAX_IMAGE_PIXELS = None

    try:
        with Image.open(image_path) as img:
            img.load()  # Prevent lazy loading
            return PixelGrid.from_image(img)
    except Exception as e:
        handle_image_load_error(e, image_path)

def save_image(grid, output_path):
    """Write a PixelGrid to disk; the format follows the file extension"""
    Image.fromarray(np.ascontiguousarray(grid.pixels)).save(output_path)
    return output_path

def validate_image_bounds(img, x, y, w, h):
    """Validate that coordinates are within image bounds"""
    if w <= 0 or h <= 0:
        raise ValueError(f"Sample size must be positive, got {w}x{h}")
    if x < 0 or y < 0 or x + w > img.width or y + h > img.height:
        raise ValueError(f"Coordinates ({x}, {y}, {w}, {h}) exceed image bounds ({img.width}, {img.height})")

def create_samples_directory(image_path):
    """Create samples directory for the image"""
    input_path = Path(image_path)
    samples_dir = input_path.parent / (input_path.stem + '.samples')
    samples_dir.mkdir(exist_ok=True)
    return samples_dir

def extract_and_save_sample(grid, x, y, w, h, samples_dir):
    """Extract subimage and save as lossless PNG sample"""
    subimage = grid.crop(x, y, w, h)
    sample_path = samples_dir / f"{x}_{y}_{w}_{h}.png"
    return save_image(subimage, sample_path)

def makesample(json_str):
    """Cut a small image out of a big one, for use as a search target"""
    params = parse_json_params(json_str, ['image', 'x', 'y', 'w', 'h'], 'makesample')

    image_path = params['image']
    x, y, w, h = params['x'], params['y'], params['w'], params['h']

    grid = load_image(image_path)
    validate_image_bounds(grid, x, y, w, h)

    samples_dir = create_samples_directory(image_path)
    sample_path = extract_and_save_sample(grid, x, y, w, h, samples_dir)

    print(f"Sample saved to: {sample_path}")
    return sample_path
