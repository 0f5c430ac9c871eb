# src/scantron_grader/tools/page_io.py
from __future__ import annotations
import logging
from pathlib import Path
from typing import List, Sequence, Union

import cv2 as cv
import numpy as np

from ..errors import SourceError
from ..models import PageImage

log = logging.getLogger(__name__)

IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"}

PageSource = Union[str, Path, bytes, bytearray, PageImage, np.ndarray, Sequence[PageImage], Sequence[np.ndarray]]


# ---------- decoding ----------
def decode_pages(data: bytes) -> List[PageImage]:
    """Decode encoded image bytes; multi-page TIFFs yield one page per frame."""
    buf = np.frombuffer(bytes(data), dtype=np.uint8)
    if buf.size == 0:
        raise SourceError("Empty page-image source")
    ok, mats = cv.imdecodemulti(buf, cv.IMREAD_GRAYSCALE)
    if ok and mats:
        return [PageImage.from_array(m) for m in mats]
    img = cv.imdecode(buf, cv.IMREAD_GRAYSCALE)
    if img is None:
        raise SourceError("Could not decode page-image bytes")
    return [PageImage(img)]


def read_image_file(path: Path) -> List[PageImage]:
    # np.fromfile + imdecode copes with non-ASCII paths on Windows
    try:
        data = np.fromfile(str(path), dtype=np.uint8)
    except OSError as e:
        raise SourceError(f"Could not read image: {path}: {e}") from e
    try:
        return decode_pages(data.tobytes())
    except SourceError as e:
        raise SourceError(f"Could not read image: {path}") from e


def image_files(folder: Path) -> List[Path]:
    return sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTS)


# ---------- entry point ----------
def load_pages(source: PageSource) -> List[PageImage]:
    """
    Accepts:
      - a path to an image (PNG/JPEG/TIFF...), multi-page TIFF allowed
      - a directory of images (sorted by filename)
      - encoded image bytes
      - already-decoded PageImage objects or numpy arrays
    PDFs must be rasterized by the caller.
    """
    if isinstance(source, (bytes, bytearray)):
        return decode_pages(source)
    if isinstance(source, PageImage):
        return [source]
    if isinstance(source, np.ndarray):
        return [PageImage.from_array(source)]

    if isinstance(source, (str, Path)):
        p = Path(source).expanduser()
        if not p.exists():
            raise SourceError(f"No such file or directory: {p}")
        if p.is_dir():
            files = image_files(p)
            if not files:
                raise SourceError(f"No images found in {p}")
            pages: List[PageImage] = []
            for f in files:
                pages.extend(read_image_file(f))
            log.info("Loaded %d page(s) from %d file(s) in %s", len(pages), len(files), p)
            return pages
        if p.suffix.lower() == ".pdf":
            raise SourceError(f"{p}: PDFs must be rasterized to images first")
        return read_image_file(p)

    pages = []
    for item in source:
        if isinstance(item, PageImage):
            pages.append(item)
        elif isinstance(item, np.ndarray):
            pages.append(PageImage.from_array(item))
        else:
            raise SourceError(f"Unsupported page type: {type(item).__name__}")
    return pages
