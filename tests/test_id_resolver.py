import json

import cv2 as cv
import numpy as np
import pytest
import pytesseract

from scantron_grader.layout import qr_region
from scantron_grader.lookup_store import LookupStore, format_key_for_qr
from scantron_grader.models import PageImage
from scantron_grader.parse_core import PageParser
from scantron_grader.tools.id_resolver import (
    IdResolver,
    parse_inline_payload,
    parse_payload,
    qr_strategies,
)
from scantron_grader.tools.name_ocr import NameReader, words_from_data

from conftest import FakeDecoder, draw_sheet


def _payload(**kw):
    d = {"v": 2, "aid": "hw-1", "sid": "s1"}
    d.update(kw)
    return json.dumps(d)


# ---------- payloads ----------

def test_inline_payload_fields():
    ident = parse_inline_payload(_payload(fmt="quiz", dok=3, ver="2024.1"))
    assert ident.assignment_id == "hw-1"
    assert ident.student_id == "s1"
    assert ident.format == "quiz"
    assert ident.variant == "3"
    assert ident.version == "2024.1"


def test_inline_payload_uses_var_when_no_dok():
    assert parse_inline_payload(_payload(v=1, var="B")).variant == "B"


@pytest.mark.parametrize("text", [
    _payload(v=3),
    json.dumps({"v": 1, "aid": "hw-1"}),
    json.dumps(["v", 1]),
    "hello world",
    "",
])
def test_unrecognised_payloads_are_rejected(text):
    assert parse_payload(text, None) is None


def test_short_key_resolves_through_store(tmp_path):
    with LookupStore(f"sqlite:///{tmp_path / 'keys.db'}") as store:
        key = store.create("hw-1", "s2", format="quiz", variant="2")
        ident = parse_payload(format_key_for_qr(key), store)
        assert (ident.assignment_id, ident.student_id, ident.format, ident.variant) == ("hw-1", "s2", "quiz", "2")
        assert parse_payload("TH:ZZZZZZZZ", store) is None


def test_short_key_without_store_is_unresolved():
    assert parse_payload("TH:ABCDEFGH", None) is None


# ---------- strategies ----------

def test_strategy_order():
    page = PageImage(np.full((1650, 1275), 255, np.uint8))
    names = [name for name, _ in qr_strategies(page)]
    assert names == [
        "full_2x", "region_3x", "region_3x_sharp", "rotated_2x",
        "full_1.5x", "full_2.5x", "full_3x", "full_2x_sharp", "binarized_2x",
    ]


def test_strategy_images_are_scaled():
    page = PageImage(np.full((1650, 1275), 255, np.uint8))
    built = dict(qr_strategies(page))
    assert built["full_2x"]().shape[1] == 2550
    _, _, size, _ = qr_region(1275)
    assert built["region_3x"]().shape[1] == size * 3


def test_resolver_keeps_trying_after_rejected_payload(sheet):
    decoder = FakeDecoder("not ours", None, _payload(sid="s3"))
    ident = IdResolver(decoder=decoder).resolve(sheet({1: "A"}))
    assert ident.student_id == "s3"
    assert decoder.calls == 3


def test_resolver_gives_up_after_every_strategy(sheet):
    decoder = FakeDecoder()
    assert IdResolver(decoder=decoder).resolve(sheet({})) is None
    assert decoder.calls == 9


def test_real_qr_code_on_sheet():
    img = draw_sheet({1: "B"}, question_count=4)
    qr = cv.QRCodeEncoder.create().encode(_payload(sid="s2"))
    scale = max(1, 180 // qr.shape[0])
    qr = cv.resize(qr, None, fx=scale, fy=scale, interpolation=cv.INTER_NEAREST)
    x, y, _, _ = qr_region(img.shape[1])
    img[y + 20:y + 20 + qr.shape[0], x + 20:x + 20 + qr.shape[1]] = qr
    ident = IdResolver().resolve(PageImage(img))
    assert ident is not None
    assert ident.student_id == "s2"


# ---------- OCR ----------

def _fake_tesseract(monkeypatch, text, conf):
    monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda: "5.3.0")

    def image_to_data(img, output_type=None, config=""):
        words = text.split()
        return {"text": [""] + words, "conf": ["-1"] + [str(conf)] * len(words)}

    monkeypatch.setattr(pytesseract, "image_to_data", image_to_data)


def test_words_from_data_skips_non_words():
    out = words_from_data({"text": ["", "Ada", " ", "Lovelace"], "conf": ["-1", "90", "-1", "80"]})
    assert out.text == "Ada Lovelace"
    assert out.confidence == pytest.approx(85.0)


def test_confident_ocr_name_is_returned(monkeypatch, sheet):
    _fake_tesseract(monkeypatch, "Ada Lovelace", 88)
    assert NameReader().read_name(sheet({})) == "Ada Lovelace"


def test_low_confidence_ocr_is_discarded(monkeypatch, sheet):
    _fake_tesseract(monkeypatch, "Ada Lovelace", 40)
    assert NameReader().read_name(sheet({})) is None


def test_short_ocr_text_is_discarded(monkeypatch, sheet):
    _fake_tesseract(monkeypatch, "Al", 95)
    assert NameReader().read_name(sheet({})) is None


def test_missing_tesseract_disables_ocr(monkeypatch, sheet):
    def missing():
        raise pytesseract.TesseractNotFoundError()

    monkeypatch.setattr(pytesseract, "get_tesseract_version", missing)
    reader = NameReader()
    assert reader.available() is False
    assert reader.read_name(sheet({})) is None


def test_unreadable_page_with_weak_ocr_stays_unidentified(monkeypatch, sheet):
    _fake_tesseract(monkeypatch, "Ada Lovelace", 40)
    resolver = IdResolver(name_reader=NameReader(), decoder=FakeDecoder())
    parsed = PageParser(resolver).parse(sheet({1: "A"}, question_count=4), 1, 4)
    assert parsed.identity is None
    assert parsed.ocr_name is None
    assert "qr_error" in parsed.flags
    assert parsed.identity_error == "QR code not found or unreadable"
