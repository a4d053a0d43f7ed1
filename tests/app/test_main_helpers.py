from __future__ import annotations

from blobstore.main import _normalize_detail, _resolve_error_code


class TestNormalizeDetail:
    def test_unwraps_message_and_extracts_error_code(self) -> None:
        detail, code = _normalize_detail({"message": "x", "error_code": "custom"})
        assert detail == "x"
        assert code == "custom"

    def test_strips_error_code_and_handles_empty(self) -> None:
        detail, code = _normalize_detail({"error_code": "custom"})
        assert detail is None
        assert code == "custom"

    def test_ignores_non_string_error_code(self) -> None:
        detail, code = _normalize_detail({"message": "x", "error_code": 123})
        assert detail == "x"
        assert code is None

    def test_returns_string_detail_as_is(self) -> None:
        assert _normalize_detail("simple error") == ("simple error", None)


class TestResolveErrorCode:
    def test_returns_override_when_provided(self) -> None:
        assert _resolve_error_code(404, override="blob_not_found") == "blob_not_found"

    def test_returns_validation_error_for_422(self) -> None:
        assert _resolve_error_code(422) == "validation_error"

    def test_returns_mapped_code_for_known_status(self) -> None:
        assert _resolve_error_code(404) == "not_found"
        assert _resolve_error_code(502) == "bad_gateway"

    def test_returns_unknown_error_for_unmapped_status(self) -> None:
        assert _resolve_error_code(418) == "unknown_error"
