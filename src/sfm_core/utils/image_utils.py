"""Image file helpers: header probing and directory listing"""

from pathlib import Path
from typing import List, Tuple, Union
import logging

from PIL import Image

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ('.jpg', '.jpeg', '.png', '.tif', '.tiff', '.bmp', '.pgm', '.ppm')


def get_img_dims(img_path: Union[str, Path]) -> Tuple[int, int]:
    """Read image width and height from the file header

    Args:
        img_path: Path to the image

    Returns:
        (width, height) in pixels

    Raises:
        OSError: If the file is missing or is not a readable image
    """
    # Image.open only parses the header, pixel data is not decoded
    with Image.open(img_path) as img:
        width, height = img.size
    return int(width), int(height)


def find_images(img_dir: Union[str, Path]) -> List[Path]:
    """List image files in a directory, sorted by name

    Args:
        img_dir: Directory to search (not recursive)

    Returns:
        Sorted list of image paths
    """
    img_dir = Path(img_dir)
    if not img_dir.is_dir():
        raise ValueError(f"Image directory does not exist: {img_dir}")

    images = sorted(p for p in img_dir.iterdir()
                    if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)
    logger.debug(f"Found {len(images)} images in {img_dir}")
    return images
