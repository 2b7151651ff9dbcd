"""
Data Source Exceptions.

Every feed failure surfaces as a DataSourceError subclass so the
runner can abort the epoch before anything is persisted.
"""

from datetime import datetime, timezone
from typing import Any, Optional


class DataSourceError(Exception):
    """Any failure reading an epoch input feed."""

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.source_name = source_name
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Structured form for log records and run results."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source_name": self.source_name,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.source_name:
            parts.append(f"[source={self.source_name}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class FetchError(DataSourceError):
    """HTTP or transport failure talking to a feed.

    status_code is None for transport failures (refused, reset, DNS).
    """

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, original_error, context)
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "status_code": self.status_code,
            "response_body": self.response_body,
            "request_url": self.request_url,
        })
        return data

    def is_server_error(self) -> bool:
        """5xx responses are transient and worth retrying."""
        return self.status_code is not None and 500 <= self.status_code < 600


class RpcError(FetchError):
    """JSON-RPC error object returned by a node."""

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        rpc_method: Optional[str] = None,
        rpc_code: Optional[int] = None,
        request_url: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            source_name,
            request_url=request_url,
            context=context,
        )
        self.rpc_method = rpc_method
        self.rpc_code = rpc_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "rpc_method": self.rpc_method,
            "rpc_code": self.rpc_code,
        })
        return data


class NormalizationError(DataSourceError):
    """Feed payload could not be mapped onto the engine inputs."""

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        raw_data: Optional[Any] = None,
        field_name: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, original_error, context)
        self.raw_data = raw_data
        self.field_name = field_name

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "raw_data": str(self.raw_data)[:500] if self.raw_data else None,
            "field_name": self.field_name,
        })
        return data


class RateLimitError(FetchError):
    """Feed answered 429."""

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        retry_after_seconds: Optional[int] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            source_name,
            status_code=429,
            original_error=original_error,
            context=context,
        )
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class DataSourceUnavailableError(DataSourceError):
    """Data source could not be reached after every retry."""

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        consecutive_failures: int = 0,
        last_successful: Optional[datetime] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, original_error, context)
        self.consecutive_failures = consecutive_failures
        self.last_successful = last_successful

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data.update({
            "consecutive_failures": self.consecutive_failures,
            "last_successful": self.last_successful.isoformat() if self.last_successful else None,
        })
        return data


class ConfigurationError(DataSourceError):
    """Feed is misconfigured or was asked for something it cannot serve."""

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        config_key: Optional[str] = None,
        original_error: Optional[Exception] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, source_name, original_error, context)
        self.config_key = config_key

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = super().to_dict()
        data["config_key"] = self.config_key
        return data
