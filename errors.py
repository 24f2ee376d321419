"""
Error taxonomy shared by the services.

Every error carries the HTTP status it maps to and a human readable message;
``main`` renders them as ``{"message": ...}``.
"""


class StorefrontError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(StorefrontError):
    status_code = 401


class NotFound(StorefrontError):
    status_code = 404


class Forbidden(StorefrontError):
    status_code = 403


class InvalidState(StorefrontError):
    status_code = 400


class InsufficientStock(InvalidState):
    def __init__(self, product_name: str):
        super().__init__(f"Insufficient stock for {product_name}")
        self.product_name = product_name


class ValidationFailed(StorefrontError):
    status_code = 400


class TooManyAttempts(StorefrontError):
    status_code = 429
