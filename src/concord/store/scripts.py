"""Lua scripts executed atomically by Redis.

Every read-check-write sequence in this package lives in one of these
scripts. Redis runs a script to completion without interleaving commands
from other clients, which is the only synchronization the primitives use.

Scripts that need the current time accept ``now`` in milliseconds and fall
back to the server clock (``TIME``) when it is 0, so processes with skewed
local clocks share a single time base.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field


@dataclass(frozen=True)
class LuaScript:
    """A named Lua script and its SHA1 digest (the EVALSHA handle)."""

    name: str
    source: str
    sha: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "sha", hashlib.sha1(self.source.encode("utf-8")).hexdigest())


_NOW = """
local now = tonumber(ARGV[{index}])
if now == nil or now <= 0 then
  local t = redis.call('TIME')
  now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
end
"""


LOCK_RELEASE = LuaScript(
    name="lock_release",
    source=r"""
-- KEYS[1] = lock key
-- ARGV[1] = token issued at acquisition
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
""",
)

LOCK_EXTEND = LuaScript(
    name="lock_extend",
    source=r"""
-- KEYS[1] = lock key
-- ARGV[1] = token issued at acquisition
-- ARGV[2] = new ttl in ms
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('PEXPIRE', KEYS[1], ARGV[2])
end
return 0
""",
)

TOKEN_BUCKET = LuaScript(
    name="token_bucket",
    source=r"""
-- KEYS[1] = bucket hash (fields: tokens, ts)
-- ARGV[1] = capacity
-- ARGV[2] = refill rate in tokens per second
-- ARGV[3] = cost
-- ARGV[4] = now in ms (0 = server clock)
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
"""
    + _NOW.format(index=4)
    + r"""
local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
  tokens = capacity
  ts = now
end

-- a clock that moved backwards refills nothing
local elapsed = now - ts
if elapsed < 0 then
  elapsed = 0
  now = ts
end

tokens = math.min(capacity, tokens + (elapsed / 1000.0) * rate)

local allowed = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
end

-- written back on denial too, so refill accounting stays exact
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))

local ttl = math.ceil((capacity / rate) * 1000)
if ttl < 1000 then
  ttl = 1000
end
redis.call('PEXPIRE', key, ttl)

return {allowed, tostring(tokens)}
""",
)

SLIDING_WINDOW = LuaScript(
    name="sliding_window",
    source=r"""
-- KEYS[1] = window sorted set (score = event time in ms)
-- ARGV[1] = limit
-- ARGV[2] = window in ms
-- ARGV[3] = cost
-- ARGV[4] = now in ms (0 = server clock)
-- ARGV[5] = nonce making members unique within one millisecond
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])
local nonce = ARGV[5]
"""
    + _NOW.format(index=4)
    + r"""
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count + cost <= limit then
  for i = 1, cost do
    redis.call('ZADD', key, now, string.format('%d:%s:%d', now, nonce, i))
  end
  redis.call('PEXPIRE', key, window)
  return {1, limit - count - cost}
end

local remaining = limit - count
if remaining < 0 then
  remaining = 0
end
return {0, remaining}
""",
)

DEAD_LETTER = LuaScript(
    name="dead_letter",
    source=r"""
-- KEYS[1] = source stream
-- KEYS[2] = dead-letter stream
-- ARGV[1] = consumer group
-- ARGV[2] = entry id
-- ARGV[3] = reason
local pending = redis.call('XPENDING', KEYS[1], ARGV[1], ARGV[2], ARGV[2], 1)
if #pending == 0 then
  return false
end

local t = redis.call('TIME')
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

local fields = {
  'original_id', ARGV[2],
  'original_stream', KEYS[1],
  'group', ARGV[1],
  'consumer', pending[1][2],
  'delivery_count', tostring(pending[1][4]),
  'reason', ARGV[3],
  'dead_lettered_at', string.format('%d', now),
}

local entries = redis.call('XRANGE', KEYS[1], ARGV[2], ARGV[2])
if #entries > 0 then
  local original = entries[1][2]
  for i = 1, #original, 2 do
    fields[#fields + 1] = original[i]
    fields[#fields + 1] = original[i + 1]
  end
end

local dead_id = redis.call('XADD', KEYS[2], '*', unpack(fields))
redis.call('XACK', KEYS[1], ARGV[1], ARGV[2])
return dead_id
""",
)

REPLAY_DEAD_LETTER = LuaScript(
    name="replay_dead_letter",
    source=r"""
-- KEYS[1] = dead-letter stream
-- KEYS[2] = target stream
-- ARGV[1] = dead-letter entry id
local entries = redis.call('XRANGE', KEYS[1], ARGV[1], ARGV[1])
if #entries == 0 then
  return false
end

local fields = entries[1][2]
local payload = nil
for i = 1, #fields, 2 do
  if fields[i] == 'payload' then
    payload = fields[i + 1]
  end
end
if payload == nil then
  return redis.error_reply('dead letter ' .. ARGV[1] .. ' has no payload')
end

local new_id = redis.call('XADD', KEYS[2], '*', 'payload', payload)
redis.call('XDEL', KEYS[1], ARGV[1])
return new_id
""",
)

ALL_SCRIPTS: tuple[LuaScript, ...] = (
    LOCK_RELEASE,
    LOCK_EXTEND,
    TOKEN_BUCKET,
    SLIDING_WINDOW,
    DEAD_LETTER,
    REPLAY_DEAD_LETTER,
)
