"""
Tests for upload resolution
"""

from unittest.mock import Mock

from loan_desk.uploads import ImageStore, is_raw_upload, resolve_upload


def test_raw_upload_detection():
    assert is_raw_upload(b"\x89PNG")
    assert is_raw_upload("data:image/png;base64,AAAA")
    assert not is_raw_upload("/uploads/images/photo.png")
    assert not is_raw_upload(None)


def test_reference_strings_pass_through():
    store = Mock(spec=ImageStore)
    assert resolve_upload(store, "clientPhoto", "https://cdn.example.com/a.png") == "https://cdn.example.com/a.png"
    store.store.assert_not_called()


def test_empty_values():
    assert resolve_upload(None, "clientPhoto", None) is None
    assert resolve_upload(None, "clientPhoto", "") is None


def test_missing_store_drops_upload(caplog):
    with caplog.at_level("WARNING", logger="loan_desk.uploads"):
        assert resolve_upload(None, "clientPhoto", b"\x89PNG") is None
    assert "No image store configured" in caplog.text


def test_store_failures_leave_field_empty():
    store = Mock(spec=ImageStore)
    store.store.side_effect = [OSError("quota exceeded"), None, "/uploads/pan.png"]

    uploads = {"aadhaarFrontImage": b"1", "aadhaarBackImage": b"2", "panFrontImage": b"3"}
    resolved = {name: resolve_upload(store, name, value) for name, value in uploads.items()}

    assert resolved == {
        "aadhaarFrontImage": None,
        "aadhaarBackImage": None,
        "panFrontImage": "/uploads/pan.png",
    }
