"""Provider payload sanitization tests."""

from fastapi_carrierlink.sanitize import sanitize_provider_payload


def test_strips_personal_fields_and_objects() -> None:
    raw = {
        "awb": "AWB123",
        "current_status": "Delivered",
        "name": "Asha Rao",
        "phone": "9876543210",
        "customer": {"city": "Pune", "awb": "leak"},
        "consignee": {"name": "Asha"},
    }

    assert sanitize_provider_payload("Shiprocket", raw) == {
        "awb": "AWB123",
        "current_status": "Delivered",
        "provider": "shiprocket",
    }


def test_keeps_allowed_nested_objects_only() -> None:
    raw = {
        "dimensions": {"l": 10, "w": 5, "h": 2, "label": "box"},
        "extra": {"awb": "AWB1"},
    }

    assert sanitize_provider_payload(None, raw) == {
        "dimensions": {"l": 10, "w": 5, "h": 2},
    }


def test_history_arrays_survive() -> None:
    raw = {
        "scan_history": [
            {"status": "Picked Up", "city": "Delhi", "address": "x"},
            {"status": "In Transit", "location_note": "hub"},
        ]
    }

    assert sanitize_provider_payload(None, raw) == {
        "scan_history": [
            {"status": "Picked Up", "city": "Delhi"},
            {"status": "In Transit"},
        ]
    }


def test_empty_or_non_mapping_payload() -> None:
    assert sanitize_provider_payload(None, None) is None
    assert sanitize_provider_payload(None, ["awb"]) is None
    assert sanitize_provider_payload("fake", {}) == {"provider": "fake"}
