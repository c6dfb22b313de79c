"""Runtime settings for decision share links."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from core.env import env_int, env_list, env_str

CLIENT_ACTIONS: Tuple[str, ...] = ("confirm_choice", "ask_question", "request_change")


@dataclass(frozen=True)
class ShareSettings:
    """Expiry, passcode and hashing knobs for share tokens."""

    default_ttl_days: Optional[int]
    max_ttl_days: int
    passcode_min_length: int
    passcode_max_length: int
    argon_time_cost: int
    argon_memory_cost: int
    argon_parallelism: int
    max_active_links: int
    default_allowed_actions: Tuple[str, ...]
    public_base_url: str
    ip_hash_salt: str

    @classmethod
    def load(cls) -> "ShareSettings":
        default_ttl = env_int("SHARE_DEFAULT_TTL_DAYS", 0, minimum=0)
        defaults = tuple(
            action for action in env_list("SHARE_DEFAULT_ALLOWED_ACTIONS", list(CLIENT_ACTIONS)) if action in CLIENT_ACTIONS
        )
        return cls(
            default_ttl_days=default_ttl or None,
            max_ttl_days=env_int("SHARE_MAX_TTL_DAYS", 365, minimum=1),
            passcode_min_length=env_int("SHARE_PASSCODE_MIN_LENGTH", 4, minimum=1),
            passcode_max_length=env_int("SHARE_PASSCODE_MAX_LENGTH", 64, minimum=4, maximum=256),
            argon_time_cost=env_int("SHARE_ARGON_TIME_COST", 2, minimum=1),
            argon_memory_cost=env_int("SHARE_ARGON_MEMORY_COST", 65536, minimum=8),
            argon_parallelism=env_int("SHARE_ARGON_PARALLELISM", 1, minimum=1),
            max_active_links=env_int("SHARE_MAX_ACTIVE_LINKS", 20, minimum=1),
            default_allowed_actions=defaults,
            public_base_url=(env_str("SHARE_PUBLIC_BASE_URL", "http://localhost:3000") or "").rstrip("/"),
            ip_hash_salt=env_str("ACCESS_LOG_IP_SALT", "") or "",
        )

    def share_url(self, token: str) -> str:
        return f"{self.public_base_url}/share/{token}"


__all__ = ["CLIENT_ACTIONS", "ShareSettings"]
