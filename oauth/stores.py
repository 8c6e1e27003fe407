"""Authorization state stores.

State is keyed by nonce (the authorization code / session handle).
Two backends: an in-process dict for single-instance deployments and
tests, and a Supabase table shared between instances.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import NamedTuple, Optional

import httpx
from postgrest.exceptions import APIError

from oauth.errors import StateUnavailable

logger = logging.getLogger(__name__)


class AuthState(NamedTuple):
    iss: str
    logged_in: bool
    exp: int
    nonce: str
    sub: Optional[str] = None
    aud: Optional[str] = None
    code_used: Optional[int] = None

    def is_expired(self, now: int) -> bool:
        return self.exp < now


class StateStore(ABC):
    @abstractmethod
    async def create(self, key: str, value: AuthState) -> None:
        pass

    @abstractmethod
    async def read(self, key: str) -> Optional[AuthState]:
        pass

    @abstractmethod
    async def update(self, key: str, value: AuthState) -> None:
        pass

    @abstractmethod
    async def mark_code_used(self, key: str, used_at: int) -> bool:
        """Set code_used only if it is still unset.

        Returns True for exactly one caller per key; every later or
        concurrent caller gets False.
        """


class MemoryStateStore(StateStore):
    """Process-local store. Entries are never evicted; expiry is checked by the engine."""

    def __init__(self):
        self._states: dict[str, AuthState] = {}
        self._lock = asyncio.Lock()

    async def create(self, key: str, value: AuthState) -> None:
        self._states[key] = value

    async def read(self, key: str) -> Optional[AuthState]:
        return self._states.get(key)

    async def update(self, key: str, value: AuthState) -> None:
        self._states[key] = value

    async def mark_code_used(self, key: str, used_at: int) -> bool:
        async with self._lock:
            state = self._states.get(key)
            if state is None or state.code_used is not None:
                return False
            self._states[key] = state._replace(code_used=used_at)
            return True


class SupabaseStateStore(StateStore):
    """State rows in a Supabase table (one row per nonce).

    Expected columns: nonce (primary key), iss, logged_in, exp, sub, aud,
    code_used. The Supabase client is synchronous, so calls run in a
    worker thread.
    """

    def __init__(self, supabase_client, table: str = "oauth_state"):
        self.supabase = supabase_client
        self.table = table

    async def _run(self, action: str, query):
        try:
            return await asyncio.to_thread(query.execute)
        except (APIError, httpx.HTTPError) as e:
            logger.error(f"[STATE] {action} failed: {e}")
            raise StateUnavailable() from e

    async def create(self, key: str, value: AuthState) -> None:
        row = {**value._asdict(), "nonce": key}
        await self._run("create", self.supabase.table(self.table).insert(row))

    async def read(self, key: str) -> Optional[AuthState]:
        query = self.supabase.table(self.table).select("*").eq("nonce", key).limit(1)
        response = await self._run("read", query)
        if not response.data:
            return None
        row = response.data[0]
        return AuthState(**{field: row.get(field) for field in AuthState._fields})

    async def update(self, key: str, value: AuthState) -> None:
        row = {**value._asdict(), "nonce": key}
        query = self.supabase.table(self.table).update(row).eq("nonce", key)
        await self._run("update", query)

    async def mark_code_used(self, key: str, used_at: int) -> bool:
        # Single conditional UPDATE; only the first writer matches the row
        query = (
            self.supabase.table(self.table)
            .update({"code_used": used_at})
            .eq("nonce", key)
            .is_("code_used", "null")
        )
        response = await self._run("mark_code_used", query)
        return bool(response.data)
