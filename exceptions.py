#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Custom exceptions for the marketplace checkout server."""


class MarketplaceError(Exception):
  """Base class for all marketplace exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class ResourceNotFoundError(MarketplaceError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class InvalidRequestError(MarketplaceError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str, code: str = "INVALID_REQUEST"):
    super().__init__(message, code=code, status_code=400)


class OutOfStockError(InvalidRequestError):
  """Raised when there is insufficient stock for a line item."""

  def __init__(self, message: str):
    super().__init__(message, code="OUT_OF_STOCK")


class PromoInvalidError(InvalidRequestError):
  """Raised when a promo code cannot be applied at checkout."""

  def __init__(self, message: str):
    super().__init__(message, code="PROMO_INVALID")


class ForbiddenError(MarketplaceError):
  """Raised when the caller does not own the requested resource."""

  def __init__(self, message: str):
    super().__init__(message, code="FORBIDDEN", status_code=403)


class ConflictError(MarketplaceError):
  """Raised when the request conflicts with existing state."""

  def __init__(self, message: str):
    super().__init__(message, code="CONFLICT", status_code=409)


class PaymentGatewayError(MarketplaceError):
  """Raised when the payment gateway rejects or fails a request."""

  def __init__(
      self,
      message: str,
      code: str = "PAYMENT_GATEWAY_ERROR",
      status_code: int = 502,
  ):
    super().__init__(message, code=code, status_code=status_code)


class CourierError(MarketplaceError):
  """Raised when the courier API fails or reports errors."""

  def __init__(self, message: str, status_code: int = 502):
    super().__init__(message, code="COURIER_ERROR", status_code=status_code)
