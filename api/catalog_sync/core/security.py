import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx
from fastapi import Depends, Header, HTTPException, status

from catalog_sync.core.auth import SCOPE_ADMIN, SCOPE_READ, SCOPE_RUN, Principal, PrincipalType
from catalog_sync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

ROLE_SCOPES: dict[str, set[str]] = {
    "user": set(),
    "moderator": {SCOPE_READ},
    "admin": {SCOPE_RUN, SCOPE_READ, SCOPE_ADMIN},
}
DEFAULT_MACHINE_SCOPES = frozenset({SCOPE_RUN, SCOPE_READ})


@dataclass(slots=True, frozen=True)
class MachineCredential:
    module_id: str
    key_hash: str
    scopes: frozenset[str]


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def parse_machine_credentials(raw: str | None) -> dict[str, MachineCredential]:
    """Read ``{"module-id": "<sha256>"}`` or ``{"module-id": {"key_hash": ..., "scopes": [...]}}``."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("machine_api_keys_json must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise ValueError("machine_api_keys_json must be a JSON object")

    credentials: dict[str, MachineCredential] = {}
    for module_id, entry in parsed.items():
        if isinstance(entry, str):
            key_hash, scopes = entry, DEFAULT_MACHINE_SCOPES
        elif isinstance(entry, dict) and isinstance(entry.get("key_hash"), str):
            key_hash = entry["key_hash"]
            raw_scopes = entry.get("scopes")
            scopes = frozenset(raw_scopes) if isinstance(raw_scopes, list) else DEFAULT_MACHINE_SCOPES
        else:
            raise ValueError(f"invalid machine credential for module {module_id}")
        credentials[module_id] = MachineCredential(module_id=module_id, key_hash=key_hash.lower(), scopes=scopes)
    return credentials


@lru_cache
def _cached_credentials(raw: str | None) -> dict[str, MachineCredential]:
    return parse_machine_credentials(raw)


def get_machine_credentials(settings: Settings = Depends(get_settings)) -> dict[str, MachineCredential]:
    try:
        return _cached_credentials(settings.machine_api_keys_json)
    except ValueError as exc:
        logger.error("machine credentials misconfigured: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


async def get_machine_principal(
    credentials: dict[str, MachineCredential] = Depends(get_machine_credentials),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="machine auth requires X-API-Key and X-Module-Id",
        )

    credential = credentials.get(x_module_id)
    if credential is None or not hmac.compare_digest(credential.key_hash, hash_api_key(x_api_key)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=credential.module_id,
        scopes=set(credential.scopes),
        actor_id=credential.module_id,
    )


async def get_human_principal(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="human auth requires bearer token",
        )

    token = authorization.split(" ", maxsplit=1)[1].strip()
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="empty bearer token")

    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth is not configured",
        )

    user = await _fetch_supabase_user(
        supabase_url=settings.supabase_url,
        supabase_anon_key=settings.supabase_anon_key,
        token=token,
        timeout_seconds=settings.auth_timeout_seconds,
    )
    user_id = user.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    role = _resolve_human_role(user)
    return Principal(
        principal_type=PrincipalType.HUMAN,
        subject=user_id,
        role=role,
        scopes=set(ROLE_SCOPES.get(role, ROLE_SCOPES["user"])),
        actor_id=user_id,
    )


async def get_principal(
    settings: Settings = Depends(get_settings),
    credentials: dict[str, MachineCredential] = Depends(get_machine_credentials),
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    """Machine credentials when an API key is sent, otherwise a bearer token."""
    if x_api_key or x_module_id:
        return await get_machine_principal(credentials=credentials, x_api_key=x_api_key, x_module_id=x_module_id)
    return await get_human_principal(settings=settings, authorization=authorization)


async def _fetch_supabase_user(
    *,
    supabase_url: str,
    supabase_anon_key: str,
    token: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }
    url = f"{supabase_url.rstrip('/')}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as exc:  # pragma: no cover - network dependent
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification unavailable",
        ) from exc

    if response.status_code in {401, 403}:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")
    if response.status_code != 200:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Supabase auth verification failed",
        )

    return response.json()


def _resolve_human_role(user: dict[str, Any]) -> str:
    for key in ("app_metadata", "user_metadata"):
        metadata = user.get(key)
        if isinstance(metadata, dict):
            role = metadata.get("role")
            if isinstance(role, str) and role:
                return role
    return "user"
