"""Success/failure container returned by every connector operation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Generic, Mapping, TypeVar, Union

from .errors import ConnectorError, RemoteRejected

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Ok(Generic[T]):
    value: T
    ok: ClassVar[bool] = True

    def unwrap(self) -> T:
        return self.value


@dataclass(slots=True, frozen=True)
class Err:
    error: ConnectorError
    ok: ClassVar[bool] = False

    def unwrap(self) -> Any:
        raise self.error


Result = Union[Ok[T], Err]


def check_reply(result: Result[Any], operation: str) -> Result[Any]:
    """
    Turn a transport result into a facade result.

    Transport failures pass through untouched. A successful transport call
    whose body carries an ``error`` field, or ``success``/``ok`` set to false,
    becomes ``RemoteRejected``.
    """
    if not result.ok:
        return result
    payload = result.value
    if not isinstance(payload, Mapping):
        return result
    error = payload.get("error")
    if error:
        code = payload.get("code")
        return Err(
            RemoteRejected(
                f"{operation} rejected: {error}",
                code=str(code) if code is not None else None,
                details=payload,
            )
        )
    if payload.get("success") is False or payload.get("ok") is False:
        message = payload.get("message") or "request rejected"
        code = payload.get("code")
        return Err(
            RemoteRejected(
                f"{operation} rejected: {message}",
                code=str(code) if code is not None else None,
                details=payload,
            )
        )
    return result


__all__ = ["Err", "Ok", "Result", "check_reply"]
