from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ParseFailure

_TOKEN_FIELDS = {
    "accessToken": "access_token",
    "refreshToken": "refresh_token",
    "expiresAt": "expires_at",
    "scopes": "scopes",
    "subscriptionType": "subscription_type",
    "rateLimitTier": "rate_limit_tier",
}


def now_ms() -> int:
    return int(time.time() * 1000)


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


@dataclass
class OAuthToken:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    scopes: Optional[List[str]] = None
    subscription_type: Optional[str] = None
    rate_limit_tier: Optional[str] = None
    # keys of the stored token object we do not interpret; written back as-is
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "OAuthToken":
        return cls(access_token="")

    @classmethod
    def from_dict(cls, data: Any) -> "OAuthToken":
        if not isinstance(data, dict):
            raise ParseFailure("Failed to parse credentials: OAuth section is not an object")
        access_token = data.get("accessToken")
        if not isinstance(access_token, str):
            raise ParseFailure("Failed to parse credentials: missing accessToken")
        expires_at = data.get("expiresAt")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            expires_at = None
        elif isinstance(expires_at, float) and not expires_at.is_integer():
            expires_at = None
        scopes = data.get("scopes")
        if not isinstance(scopes, list) or not all(isinstance(s, str) for s in scopes):
            scopes = None
        token = cls(
            access_token=access_token,
            refresh_token=_opt_str(data.get("refreshToken")) or None,
            expires_at=int(expires_at) if expires_at is not None else None,
            scopes=list(scopes) if scopes is not None else None,
            subscription_type=_opt_str(data.get("subscriptionType")),
            rate_limit_tier=_opt_str(data.get("rateLimitTier")),
            extra={k: v for k, v in data.items() if k not in _TOKEN_FIELDS},
        )
        # Known keys holding values we cannot interpret are carried verbatim,
        # so a later write puts them back unless a real value replaces them.
        for wire, attr in _TOKEN_FIELDS.items():
            if wire in data and getattr(token, attr) is None:
                token.extra[wire] = data[wire]
        return token

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.extra)
        for wire, attr in _TOKEN_FIELDS.items():
            value = getattr(self, attr)
            if value is None and wire != "accessToken":
                continue
            out[wire] = list(value) if isinstance(value, list) else value
        return out

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (at_ms if at_ms is not None else now_ms())


def format_subscription(subscription_type: Optional[str], rate_limit_tier: Optional[str]) -> str:
    if subscription_type == "max":
        multiplier = ""
        if rate_limit_tier:
            if "20x" in rate_limit_tier:
                multiplier = "20x"
            elif "5x" in rate_limit_tier:
                multiplier = "5x"
        return f"Max {multiplier}".strip()
    if subscription_type == "pro":
        return "Pro"
    if subscription_type in (None, "free"):
        return "Free"
    return subscription_type


@dataclass(frozen=True)
class AccountProfile:
    email: Optional[str] = None
    display_name: Optional[str] = None
    full_name: Optional[str] = None
    subscription: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "AccountProfile":
        account = payload.get("account") if isinstance(payload, dict) else None
        if not isinstance(account, dict):
            raise ParseFailure("Failed to parse profile: missing account object")
        return cls(
            email=_opt_str(account.get("email")),
            display_name=_opt_str(account.get("display_name")),
            full_name=_opt_str(account.get("full_name")),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountProfile":
        return cls(
            email=_opt_str(data.get("email")),
            display_name=_opt_str(data.get("display_name")),
            full_name=_opt_str(data.get("full_name")),
            subscription=_opt_str(data.get("subscription")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "display_name": self.display_name,
            "full_name": self.full_name,
            "subscription": self.subscription,
        }
