"""
Service-layer errors for catalog, spec, price and sync operations.

Routes translate these into HTTPException using status_code.
"""

from typing import Optional


class ServiceError(Exception):
    """Base service error"""
    status_code = 400

    def __init__(self, error_code: str, message: str, field: Optional[str] = None):
        self.error_code = error_code
        self.message = message
        self.field = field
        super().__init__(self.message)


class ProductNotFoundError(ServiceError):
    status_code = 404

    def __init__(self, product_id: str):
        super().__init__("PRODUCT_NOT_FOUND", f"Product '{product_id}' not found", field="catalog_product_id")


class DistributorNotFoundError(ServiceError):
    status_code = 404

    def __init__(self, distributor_id: str):
        super().__init__("DISTRIBUTOR_NOT_FOUND", f"Distributor '{distributor_id}' not found", field="distributor_id")


class SpecNotFoundError(ServiceError):
    status_code = 404

    def __init__(self, message: str):
        super().__init__("SPEC_NOT_FOUND", message, field="spec_id")


class SpecAlreadyExistsError(ServiceError):
    status_code = 409

    def __init__(self, catalog_product_id: str, distributor_id: str):
        super().__init__(
            "SPEC_ALREADY_EXISTS",
            f"Spec already exists for product '{catalog_product_id}' and distributor '{distributor_id}'",
        )


class SpecValidationError(ServiceError):
    """Pack unit cannot be converted to the product's preferred unit"""

    def __init__(self, error_code: str, message: str):
        super().__init__(error_code, message, field="pack_unit_of_measure")


class DuplicateImportError(ServiceError):
    status_code = 409

    def __init__(self, file_name: str, file_hash: str):
        super().__init__(
            "DUPLICATE_IMPORT",
            f"File '{file_name}' was already imported for this distributor (sha256 {file_hash[:12]}...)",
            field="file",
        )


class SyncError(ServiceError):
    status_code = 502

    def __init__(self, message: str):
        super().__init__("SYNC_ERROR", message)


class SyncAuthError(SyncError):
    def __init__(self, message: str):
        super().__init__(message)
        self.error_code = "SYNC_AUTH_ERROR"


class InvalidCsvFormatError(ServiceError):
    def __init__(self, message: str):
        super().__init__("INVALID_CSV_FORMAT", message, field="file")
