"""Tests for the error hierarchy."""

from rendezvous.errors import (
    BadRequestError,
    ConflictError,
    ErrorResponse,
    NotFoundError,
    RendezvousError,
    StorageError,
)


class TestErrors:
    def test_default_detail(self):
        err = NotFoundError()

        assert err.detail == "Resource not found"
        assert str(err) == "Resource not found"
        assert err.context is None

    def test_custom_detail_and_context(self):
        err = BadRequestError(detail="bad mode", error_code="E_MODE", mode="'merge'")

        assert err.detail == "bad mode"
        assert err.error_code == "E_MODE"
        assert err.context == {"mode": "'merge'"}

    def test_to_response(self):
        response = ConflictError(detail="Event is matched", resource_id="evt").to_response()

        assert isinstance(response, ErrorResponse)
        assert response.error == "conflict"
        assert response.detail == "Event is matched"
        assert response.context == {"resource_id": "evt"}

    def test_hierarchy(self):
        for cls in (NotFoundError, BadRequestError, ConflictError, StorageError):
            assert issubclass(cls, RendezvousError)

    def test_error_names(self):
        assert StorageError().error == "storage_error"
        assert RendezvousError().error == "internal_error"
