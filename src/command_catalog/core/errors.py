"""Domain errors raised by the catalog and rendered by the HTTP layer.

Every error names the request field it concerns so the server can answer with
a field-keyed body, e.g. ``{"name": ["Vendor 'cisco' already exists."]}``.
"""

from __future__ import annotations

from typing import Any

NON_FIELD = "non_field_errors"


class CatalogError(ValueError):
    status_code = 400

    def __init__(self, message: str, field: str = NON_FIELD) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_payload(self) -> dict[str, Any]:
        return {self.field: [self.message]}


class ValidationFailed(CatalogError):
    def __init__(self, errors: dict[str, list[str]]) -> None:
        first_field = next(iter(errors), NON_FIELD)
        first = errors.get(first_field) or ["Invalid request."]
        super().__init__(first[0], first_field)
        self.errors = errors

    def to_payload(self) -> dict[str, Any]:
        return {key: list(value) for key, value in self.errors.items()}


class DuplicateName(CatalogError):
    pass


class DuplicateSibling(CatalogError):
    pass


class DuplicateCommand(CatalogError):
    pass


class UnknownVendor(CatalogError):
    def __init__(self, vendor_id: Any, field: str = "vendor") -> None:
        super().__init__(f"Vendor {vendor_id} does not exist.", field)
        self.vendor_id = vendor_id


class ParentVendorMismatch(CatalogError):
    pass


class InvalidReference(CatalogError):
    pass


class SheetError(CatalogError):
    def __init__(self, message: str, field: str = "csv_file") -> None:
        super().__init__(message, field)


class NotFound(CatalogError):
    status_code = 404

    def __init__(self, message: str = "Not found.", field: str = "detail") -> None:
        super().__init__(message, field)

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message}


class IngestFailed(CatalogError):
    status_code = 500

    def __init__(self, message: str = "Upload failed; no changes were saved.") -> None:
        super().__init__(message, "detail")

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message}
