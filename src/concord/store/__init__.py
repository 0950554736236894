"""Backing store access: Redis client, key schema, Lua scripts, executor."""

from concord.store.executor import ScriptExecutor, translate_error
from concord.store.keys import StoreKeys
from concord.store.redis import close_redis, get_redis, ping
from concord.store.scripts import LuaScript

__all__ = [
    "LuaScript",
    "ScriptExecutor",
    "StoreKeys",
    "close_redis",
    "get_redis",
    "ping",
    "translate_error",
]
