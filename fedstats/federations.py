"""Federation membership registry: CRUD plus JSON file persistence.

Member API tokens are stored in the OS keychain via `keyring`,
never in federations.json.
"""

import json
import logging
import uuid
from typing import Any

import keyring
from pydantic import BaseModel, ConfigDict, Field

from fedstats.config import settings
from fedstats.errors import UnknownFederation

log = logging.getLogger(__name__)

_CONFIG_PATH = settings.registry.path
_KEYRING_SERVICE = settings.registry.keyring_service


class Member(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    url: str
    device_groups: list[str] = []
    api_token: str = ""


class Federation(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    members: list[Member] = []


class FederationStore(BaseModel):
    federations: list[Federation] = []


class MembershipSnapshot(BaseModel):
    """Read-only view of a federation's members, taken once per query."""

    model_config = ConfigDict(frozen=True)

    federation_id: str
    members: tuple[Member, ...]

    def member_ids(self) -> set[str]:
        return {m.id for m in self.members}

    def device_groups(self) -> set[str]:
        return {g for m in self.members for g in m.device_groups}


# ── Keyring helpers ──


def _keyring_key(member_id: str) -> str:
    return f"{member_id}:api_token"


def _save_token(member_id: str, value: str) -> None:
    key = _keyring_key(member_id)
    if value:
        keyring.set_password(_KEYRING_SERVICE, key, value)
    else:
        try:
            keyring.delete_password(_KEYRING_SERVICE, key)
        except keyring.errors.PasswordDeleteError:
            pass


def _load_token(member_id: str) -> str:
    return keyring.get_password(_KEYRING_SERVICE, _keyring_key(member_id)) or ""


def _delete_token(member_id: str) -> None:
    try:
        keyring.delete_password(_KEYRING_SERVICE, _keyring_key(member_id))
    except keyring.errors.PasswordDeleteError:
        pass


def _populate_tokens(federation: Federation) -> Federation:
    data = federation.model_dump()
    for member in data["members"]:
        member["api_token"] = _load_token(member["id"])
    return Federation(**data)


def _strip_tokens(store: FederationStore) -> dict:
    data = store.model_dump()
    for fed in data["federations"]:
        for member in fed["members"]:
            member["api_token"] = ""
    return data


# ── Persistence ──


def _load_store() -> FederationStore:
    if _CONFIG_PATH.exists():
        raw = json.loads(_CONFIG_PATH.read_text())
        store = FederationStore(**raw)
        store.federations = [_populate_tokens(f) for f in store.federations]
        return store
    return FederationStore()


def _save_store(store: FederationStore) -> None:
    for fed in store.federations:
        for member in fed.members:
            if member.api_token:
                _save_token(member.id, member.api_token)
    stripped = _strip_tokens(store)
    _CONFIG_PATH.write_text(json.dumps(stripped, indent=2) + "\n")


def registry_status() -> str:
    if not _CONFIG_PATH.exists():
        return "empty"
    return f"{len(_load_store().federations)} federation(s)"


def list_federations() -> list[Federation]:
    return _load_store().federations


def get_federation(federation_id: str) -> Federation | None:
    for f in _load_store().federations:
        if f.id == federation_id:
            return f
    return None


def add_federation(federation: Federation) -> Federation:
    store = _load_store()
    store.federations.append(federation)
    _save_store(store)
    log.info("Federation '%s' registered with %d member(s)", federation.name, len(federation.members))
    return federation


def delete_federation(federation_id: str) -> bool:
    store = _load_store()
    removed = [f for f in store.federations if f.id == federation_id]
    if not removed:
        return False
    store.federations = [f for f in store.federations if f.id != federation_id]
    _save_store(store)
    for member in removed[0].members:
        _delete_token(member.id)
    return True


def add_member(federation_id: str, member: Member) -> Member | None:
    store = _load_store()
    for fed in store.federations:
        if fed.id == federation_id:
            fed.members.append(member)
            _save_store(store)
            log.info("Member '%s' joined federation '%s'", member.name, fed.name)
            return member
    return None


def remove_member(federation_id: str, member_id: str) -> bool:
    store = _load_store()
    for fed in store.federations:
        if fed.id != federation_id:
            continue
        original_len = len(fed.members)
        fed.members = [m for m in fed.members if m.id != member_id]
        if len(fed.members) == original_len:
            return False
        _save_store(store)
        _delete_token(member_id)
        return True
    return False


def update_member(federation_id: str, member_id: str, updates: dict[str, Any]) -> Member | None:
    store = _load_store()
    for fed in store.federations:
        if fed.id != federation_id:
            continue
        for i, m in enumerate(fed.members):
            if m.id == member_id:
                data = m.model_dump()
                # Empty token from the edit form means "unchanged".
                if not updates.get("api_token"):
                    updates.pop("api_token", None)
                data.update({k: v for k, v in updates.items() if v is not None})
                data["id"] = member_id
                fed.members[i] = Member(**data)
                _save_store(store)
                return fed.members[i]
    return None


def snapshot(federation_id: str) -> MembershipSnapshot:
    """Return the current membership of a federation as an immutable snapshot."""
    fed = get_federation(federation_id)
    if fed is None:
        raise UnknownFederation(f"Federation not found: {federation_id}")
    return MembershipSnapshot(federation_id=fed.id, members=tuple(fed.members))
