"""Game identity: which session a message belongs to.

A match can be referred to two ways. The ephemeral id is assigned by the
match server for the lifetime of one match (matchmade ids carry a ``g_``
prefix). The persisted id is the durable row id that lets a session be
resumed after a full reload (private rooms always have one). Messages may
carry either or both, so every comparison goes through
``GameIdentity.matches()`` rather than string checks at the call sites.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Union

MATCHMADE_PREFIX = "g_"


@dataclass(frozen=True)
class Ephemeral:
    id: str


@dataclass(frozen=True)
class Persisted:
    id: str


IdentityRef = Union[Ephemeral, Persisted]


def _clean(value) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def refs_from_payload(payload: Mapping) -> frozenset:
    """Collect every identity reference an inbound message carries.

    ``gameId`` / ``game_id`` are ephemeral, ``dbGameId`` / ``db_game_id``
    are persisted. An empty set means the message names no session.
    """
    refs = set()
    for key in ("gameId", "game_id"):
        value = _clean(payload.get(key))
        if value:
            refs.add(Ephemeral(value))
    for key in ("dbGameId", "db_game_id"):
        value = _clean(payload.get(key))
        if value:
            refs.add(Persisted(value))
    return frozenset(refs)


@dataclass(frozen=True)
class GameIdentity:
    session_id: str | None = None
    persisted_id: str | None = None

    def __post_init__(self):
        if not self.session_id and not self.persisted_id:
            raise ValueError("GameIdentity needs a session id or a persisted id")

    @classmethod
    def persisted(cls, persisted_id: str) -> "GameIdentity":
        return cls(session_id=None, persisted_id=persisted_id)

    @property
    def is_matchmade(self) -> bool:
        return bool(self.session_id and self.session_id.startswith(MATCHMADE_PREFIX))

    @property
    def refs(self) -> frozenset:
        refs = set()
        if self.session_id:
            refs.add(Ephemeral(self.session_id))
        if self.persisted_id:
            refs.add(Persisted(self.persisted_id))
        return frozenset(refs)

    def matches(self, refs: Iterable[IdentityRef]) -> bool:
        """True if any of *refs* names this session."""
        return not self.refs.isdisjoint(refs)

    def merged(self, refs: Iterable[IdentityRef]) -> "GameIdentity":
        """Fill in whichever id this identity is missing from *refs*.

        Existing ids are never overwritten.
        """
        session_id = self.session_id
        persisted_id = self.persisted_id
        for ref in refs:
            if isinstance(ref, Ephemeral) and not session_id:
                session_id = ref.id
            elif isinstance(ref, Persisted) and not persisted_id:
                persisted_id = ref.id
        return GameIdentity(session_id=session_id, persisted_id=persisted_id)

    def wire_fields(self) -> dict:
        fields = {}
        if self.session_id:
            fields["gameId"] = self.session_id
        if self.persisted_id:
            fields["dbGameId"] = self.persisted_id
        return fields

    def __str__(self) -> str:
        return self.session_id or f"persisted:{self.persisted_id}"
