# src/core/errors.py
"""
Taxonomía de errores del cliente.

- TransportError: caída de canal, timeout, fallo de red. Se recupera localmente
  (reconexión / fallback a polling).
- ApiError: respuesta HTTP de error del API de comandos. `retryable` para 5xx/429/408.
- AuthError: 401/403. Fatal para la suscripción actual, nunca se reintenta.
- RetryableError: se agotaron todos los fallbacks; el llamante puede reintentar.

Las inconsistencias de datos (discrepancias, interval mismatch) y el "stall" NO son
excepciones: viajan como diagnósticos junto a los datos.
"""

from __future__ import annotations

__all__ = [
    "ClientError",
    "TransportError",
    "ApiError",
    "AuthError",
    "RetryableError",
    "describe_api_error",
    "describe_submission_error",
]

_RETRYABLE_STATUS = {408, 429}


class ClientError(Exception):
    """Error base del cliente."""

    pass


class TransportError(ClientError):
    """Fallo de transporte recuperable (WS/SSE/HTTP sin respuesta)."""

    pass


class ApiError(ClientError):
    """Respuesta de error del API REST."""

    def __init__(self, status: int, detail: str = "") -> None:
        self.status = int(status)
        self.detail = detail or ""
        super().__init__(f"HTTP {self.status}: {self.detail}" if self.detail else f"HTTP {self.status}")

    @property
    def retryable(self) -> bool:
        return self.status >= 500 or self.status in _RETRYABLE_STATUS

    @property
    def user_message(self) -> str:
        return describe_api_error(self.status, self.detail)


class AuthError(ApiError):
    """Credencial rechazada (401/403)."""

    @property
    def retryable(self) -> bool:
        return False


class RetryableError(ClientError):
    """Se agotaron reconexiones y polling; el llamante decide si reintentar."""

    pass


def describe_api_error(status: int | None, detail: str = "") -> str:
    """Mensaje legible para el usuario a partir del status HTTP."""
    detail = detail or "Unknown error"
    if status is None:
        return "Network error. Please check your connection."
    if status == 400:
        return f"Bad Request: {detail}"
    if status == 401:
        return "Unauthorized. Please log in again."
    if status == 403:
        return "Forbidden. You don't have permission."
    if status == 404:
        return "Not found."
    if status == 429:
        return "Too many requests. Please try again later."
    if status >= 500:
        return f"Server error: {detail}"
    return f"Error {status}: {detail}"


def describe_submission_error(detail: str, symbol: str | None = None) -> str:
    """
    Traduce el `detail` de un fallo al crear un job a un mensaje accionable.
    Si no reconoce el caso devuelve el propio detalle.
    """
    text = detail or "Backtest failed"
    low = text.lower()
    if "credentials not found" in low:
        return "Broker credentials not found. Please add your broker API credentials first."
    if "access token not found" in low or "oauth" in low:
        return "Access token not found. Please complete OAuth flow to connect your broker account."
    if "instrument not found" in low:
        return f"Invalid symbol: {symbol}. Please check the symbol and try again."
    if "no historical data" in low:
        return f"No historical data found for {symbol} in the specified date range."
    return text
