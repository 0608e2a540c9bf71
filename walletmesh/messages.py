"""
Wire envelopes (pydantic) and the tagged union of inbound messages.

parse_delivery() is the only place raw dicts are interpreted; everything
downstream works with one of the InboundMessage variants.

Depends on: config, models, origin, network/transport
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from walletmesh.config import (
    JSONRPC_VERSION,
    MAX_DISPLAY_NAME_LENGTH,
    MAX_ICON_LENGTH,
    MAX_RDNS_LENGTH,
    METHOD_ANNOUNCE,
    METHOD_CREATE_SESSION,
    METHOD_INVOKE,
    METHOD_NOTIFY,
    METHOD_PROMPT,
    METHOD_REVOKE_SESSION,
)
from walletmesh.models import Announcement, DropReason, PromptFilter, RequestId
from walletmesh.network.transport import Delivery
from walletmesh.origin import canonical_id


# =============================================================================
# Envelope Models
# =============================================================================

class ErrorObject(BaseModel):
    model_config = ConfigDict(extra="allow")
    code: int
    message: str = ""
    data: Any = None


class Envelope(BaseModel):
    """JSON-RPC envelope shared by every message on the channel."""
    model_config = ConfigDict(extra="allow")
    jsonrpc: Literal["2.0"]
    id: Optional[Union[int, str]] = None
    method: Optional[str] = None
    params: Optional[Any] = None
    result: Optional[Any] = None
    error: Optional[ErrorObject] = None

    @field_validator("id", mode="before")
    @classmethod
    def _reject_bool_id(cls, v):
        if isinstance(v, bool):
            raise ValueError("id must be an integer or string")
        return v


class PromptParams(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    chains: Optional[list[str]] = None
    auth_name: Optional[str] = Field(default=None, alias="authName")


class AnnounceParams(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, str_strip_whitespace=True)
    discovery_id: str = Field(..., alias="discoveryId")
    display_name: str = Field(..., alias="displayName", min_length=1, max_length=MAX_DISPLAY_NAME_LENGTH)
    icon_ref: str = Field(..., alias="iconRef", max_length=MAX_ICON_LENGTH)
    reverse_domain_name: str = Field(..., alias="reverseDomainName", min_length=1, max_length=MAX_RDNS_LENGTH)

    @field_validator("discovery_id")
    @classmethod
    def _canonical(cls, v: str) -> str:
        return canonical_id(v)


class HandshakeParams(BaseModel):
    """Handshake params: the routing key plus an opaque negotiation payload."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    discovery_id: str = Field(..., alias="discoveryId")

    @field_validator("discovery_id")
    @classmethod
    def _canonical(cls, v: str) -> str:
        return canonical_id(v)


class SessionParams(BaseModel):
    """Session-scoped params: the correlation key plus an opaque payload."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    session_id: str = Field(..., alias="sessionId")

    @field_validator("session_id")
    @classmethod
    def _canonical(cls, v: str) -> str:
        return canonical_id(v)


# =============================================================================
# Outbound Builders
# =============================================================================

def build_request(method: str, params: dict, request_id: Optional[RequestId] = None) -> dict:
    msg = {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params}
    if request_id is not None:
        msg["id"] = request_id
    return msg


def build_prompt(prompt_filter: Optional[PromptFilter] = None) -> dict:
    params = {}
    if prompt_filter is not None:
        if prompt_filter.chains:
            params["chains"] = list(prompt_filter.chains)
        if prompt_filter.auth_name:
            params["authName"] = prompt_filter.auth_name
    return build_request(METHOD_PROMPT, params)


def build_announce(discovery_id: str, display_name: str, icon_ref: str,
                   reverse_domain_name: str) -> dict:
    return build_request(METHOD_ANNOUNCE, {
        "discoveryId": discovery_id,
        "displayName": display_name,
        "iconRef": icon_ref,
        "reverseDomainName": reverse_domain_name,
    })


def build_result(request_id: RequestId, result: Any) -> dict:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def build_error(request_id: RequestId, code: int, message: str, data: Any = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}


# =============================================================================
# Inbound Variants
# =============================================================================

@dataclass(frozen=True)
class Prompt:
    origin: str
    filter: PromptFilter


@dataclass(frozen=True)
class Announce:
    origin: str
    announcement: Announcement


@dataclass(frozen=True)
class HandshakeRequestMsg:
    origin: str
    request_id: RequestId
    discovery_id: str
    payload: dict


@dataclass(frozen=True)
class SessionRequestMsg:
    """wallet_invokeMethod, wallet_revokeSession, or wallet_notify (request_id None)."""
    origin: str
    method: str
    session_id: str
    params: dict
    request_id: Optional[RequestId] = None


@dataclass(frozen=True)
class Response:
    origin: str
    request_id: RequestId
    result: Any = None
    error: Optional[dict] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Unrecognized:
    origin: str
    reason: DropReason
    method: Optional[str] = None
    detail: str = ""
    raw: Any = field(default=None, compare=False, repr=False)


InboundMessage = Union[
    Prompt, Announce, HandshakeRequestMsg, SessionRequestMsg, Response, Unrecognized,
]

SESSION_METHODS = frozenset({METHOD_INVOKE, METHOD_REVOKE_SESSION, METHOD_NOTIFY})


def _first_error(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    loc = ".".join(str(p) for p in errors[0].get("loc", ()))
    return f"{loc}: {errors[0].get('msg', '')}" if loc else errors[0].get("msg", "")


def parse_delivery(delivery: Delivery) -> InboundMessage:
    """Classify a raw delivery by method tag. Never raises."""
    raw = delivery.message
    origin = delivery.origin

    if not isinstance(raw, dict):
        return Unrecognized(origin, DropReason.MALFORMED, detail="not an object", raw=raw)
    try:
        env = Envelope.model_validate(raw)
    except ValidationError as e:
        return Unrecognized(origin, DropReason.MALFORMED, method=raw.get("method"),
                            detail=_first_error(e), raw=raw)

    # Responses carry no method tag
    if env.method is None:
        if env.id is None or (env.error is None and "result" not in raw):
            return Unrecognized(origin, DropReason.MALFORMED, detail="neither request nor response", raw=raw)
        return Response(
            origin=origin,
            request_id=env.id,
            result=env.result,
            error=env.error.model_dump(exclude_none=True) if env.error is not None else None,
        )

    params = env.params if env.params is not None else {}
    try:
        if env.method == METHOD_PROMPT:
            p = PromptParams.model_validate(params)
            return Prompt(origin, PromptFilter(chains=p.chains, auth_name=p.auth_name))

        if env.method == METHOD_ANNOUNCE:
            a = AnnounceParams.model_validate(params)
            return Announce(origin, Announcement(
                discovery_id=a.discovery_id,
                display_name=a.display_name,
                icon_ref=a.icon_ref,
                reverse_domain_name=a.reverse_domain_name,
                source_origin=origin,
            ))

        if env.method == METHOD_CREATE_SESSION:
            if env.id is None:
                return Unrecognized(origin, DropReason.MALFORMED, method=env.method,
                                    detail="handshake without id", raw=raw)
            h = HandshakeParams.model_validate(params)
            payload = {k: v for k, v in params.items() if k != "discoveryId"}
            return HandshakeRequestMsg(origin, env.id, h.discovery_id, payload)

        if env.method in SESSION_METHODS:
            if env.method != METHOD_NOTIFY and env.id is None:
                return Unrecognized(origin, DropReason.MALFORMED, method=env.method,
                                    detail="session request without id", raw=raw)
            s = SessionParams.model_validate(params)
            return SessionRequestMsg(
                origin=origin,
                method=env.method,
                session_id=s.session_id,
                params=dict(params),
                request_id=env.id if env.method != METHOD_NOTIFY else None,
            )
    except ValidationError as e:
        return Unrecognized(origin, DropReason.MALFORMED, method=env.method,
                            detail=_first_error(e), raw=raw)
    except (TypeError, AttributeError):
        return Unrecognized(origin, DropReason.MALFORMED, method=env.method,
                            detail="params must be an object", raw=raw)

    return Unrecognized(origin, DropReason.UNRECOGNIZED_METHOD, method=env.method, raw=raw)
