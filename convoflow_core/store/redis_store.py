"""Redis-backed state store."""

import json
from typing import Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError, WatchError

from ..core.errors import StorePersistenceError
from ..flow.state import ConversationState, session_key_str
from .base import SaveResult, StateStore


logger = structlog.get_logger()


class RedisStateStore(StateStore):
    """
    Conversation state as JSON documents in Redis.

    Compare-and-swap uses WATCH/MULTI on the session key, so concurrent
    writers in other processes are detected as version conflicts.
    """

    def __init__(
        self,
        client: "redis.Redis",
        key_prefix: str = "convoflow:state:",
        ttl_seconds: Optional[int] = 86400,
    ):
        self.client = client
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStateStore":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, tenant_id: str, user_id: str, session_id: str) -> str:
        return f"{self.key_prefix}{session_key_str((tenant_id, user_id, session_id))}"

    async def load(
        self,
        tenant_id: str,
        user_id: str,
        session_id: str,
    ) -> Optional[ConversationState]:
        key = self._key(tenant_id, user_id, session_id)
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            raise StorePersistenceError("load", key, e)

        if raw is None:
            return None

        try:
            return ConversationState.from_dict(json.loads(raw))
        except (ValueError, KeyError) as e:
            raise StorePersistenceError("decode", key, e)

    async def save(
        self,
        state: ConversationState,
        expected_version: Optional[int] = None,
    ) -> SaveResult:
        expected = state.version if expected_version is None else expected_version
        key = self._key(*state.key)

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                raw = await pipe.get(key)
                current_version = json.loads(raw)["version"] if raw else 0

                if current_version != expected:
                    await pipe.unwatch()
                    logger.info(
                        "state_version_conflict",
                        key=key,
                        expected=expected,
                        actual=current_version,
                    )
                    return SaveResult(ok=False, version=current_version)

                record = state.to_dict()
                record["version"] = current_version + 1

                pipe.multi()
                pipe.set(key, json.dumps(record, default=str), ex=self.ttl_seconds)
                await pipe.execute()
        except WatchError:
            logger.info("state_watch_conflict", key=key, expected=expected)
            return SaveResult(ok=False, version=expected)
        except RedisError as e:
            raise StorePersistenceError("save", key, e)

        state.version = record["version"]
        return SaveResult(ok=True, version=state.version)

    async def delete(self, tenant_id: str, user_id: str, session_id: str) -> bool:
        key = self._key(tenant_id, user_id, session_id)
        try:
            return bool(await self.client.delete(key))
        except RedisError as e:
            raise StorePersistenceError("delete", key, e)

    async def close(self) -> None:
        await self.client.aclose()
