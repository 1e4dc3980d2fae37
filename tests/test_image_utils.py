# tests/test_image_utils.py

import pytest

from vqa_gateway.services.image_utils import estimate_decoded_size, sniff_mime_type, strip_data_url


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ("/9j/4AAQSkZJRg", "image/jpeg"),
        ("iVBORw0KGgo", "image/png"),
        ("R0lGODlhAQABAIAAAP", "image/gif"),
        ("UklGRiQAAABXRUJQVlA4", "image/webp"),
        ("Qk02AAAAAAAAADYAAAA", "image/jpeg"),
        ("", "image/jpeg"),
    ],
)
def test_sniff_mime_type(payload: str, expected: str) -> None:
    assert sniff_mime_type(payload) == expected


def test_strip_data_url() -> None:
    assert strip_data_url("data:image/png;base64,iVBORw0KGgo") == "iVBORw0KGgo"
    assert strip_data_url("iVBORw0KGgo") == "iVBORw0KGgo"


def test_estimate_decoded_size() -> None:
    assert estimate_decoded_size("AAAA") == 3
    assert estimate_decoded_size("A" * 8) == 6
