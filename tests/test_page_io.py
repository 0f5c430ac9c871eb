import cv2 as cv
import numpy as np
import pytest

from scantron_grader.errors import SourceError
from scantron_grader.models import PageImage
from scantron_grader.tools.page_io import load_pages


def _png(value, shape=(30, 20)) -> bytes:
    ok, buf = cv.imencode(".png", np.full(shape, value, np.uint8))
    assert ok
    return buf.tobytes()


def test_load_bytes():
    (page,) = load_pages(_png(200))
    assert (page.width, page.height) == (20, 30)
    assert int(page.gray[0, 0]) == 200


def test_load_directory_sorted_by_name(tmp_path):
    (tmp_path / "b.png").write_bytes(_png(100))
    (tmp_path / "a.png").write_bytes(_png(50))
    (tmp_path / "notes.txt").write_text("skip me")
    pages = load_pages(tmp_path)
    assert [int(p.gray[0, 0]) for p in pages] == [50, 100]


def test_multi_page_tiff(tmp_path):
    path = tmp_path / "scan.tiff"
    frames = [np.full((30, 20), v, np.uint8) for v in (10, 20, 30)]
    assert cv.imwritemulti(str(path), frames)
    pages = load_pages(str(path))
    assert [int(p.gray[0, 0]) for p in pages] == [10, 20, 30]


def test_color_arrays_become_gray():
    bgr = np.zeros((10, 12, 3), np.uint8)
    (page,) = load_pages([bgr])
    assert page.gray.ndim == 2
    assert page.width == 12


def test_page_images_pass_through():
    img = PageImage(np.zeros((5, 5), np.uint8))
    assert load_pages([img])[0] is img


@pytest.mark.parametrize("source", [b"", b"not an image"])
def test_bad_bytes(source):
    with pytest.raises(SourceError):
        load_pages(source)


def test_pdf_must_be_rasterized(tmp_path):
    p = tmp_path / "scan.pdf"
    p.write_bytes(b"%PDF-1.4")
    with pytest.raises(SourceError, match="rasterized"):
        load_pages(str(p))


def test_empty_directory(tmp_path):
    with pytest.raises(SourceError):
        load_pages(tmp_path)


def test_unsupported_items():
    with pytest.raises(SourceError):
        load_pages(["page.png"])


def test_dpi_scale_against_letter_width():
    page = PageImage(np.zeros((1650, 1275), np.uint8))
    assert page.dpi_scale == pytest.approx(1275 / 612)
    assert PageImage(np.zeros((792, 612), np.uint8)).dpi_scale == 1.0
