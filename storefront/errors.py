from fastapi import status

from shared.utils import AppException


class StorefrontError(AppException):
    """Base for every recoverable cart, pricing and checkout failure."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request could not be completed"

    def __init__(self, detail: str = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)


class NotFoundError(StorefrontError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class InvalidQuantityError(StorefrontError):
    default_detail = "Quantity must be a positive integer"


class InvalidCouponError(StorefrontError):
    default_detail = "Coupon is invalid or has expired"


class EmptyCartError(StorefrontError):
    default_detail = "Cart is empty"


class PriceMismatchError(StorefrontError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Prices changed since the cart was last viewed"


class PaymentFailedError(StorefrontError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = "Payment failed"


class InvalidStatusTransitionError(StorefrontError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Order status cannot be changed that way"


class OrderNotSavedError(StorefrontError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Payment was taken but the order could not be saved"
