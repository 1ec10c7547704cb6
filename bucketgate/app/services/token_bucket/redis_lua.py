"""Redis Lua script for atomic token bucket enforcement.

The whole read-refill-consume-write sequence runs inside Redis, so no two
callers for the same key can interleave, whichever server they run on.
"""

import hashlib

# KEYS[1]  bucket hash key
# ARGV[1]  refill rate (tokens per second)
# ARGV[2]  capacity
# ARGV[3]  now in seconds since epoch; negative means "use Redis TIME"
# ARGV[4]  cost
# ARGV[5]  ttl in seconds; <= 0 means the key never expires
#
# Returns {allowed (0|1), remaining, retry_after, recovered (0|1)}.
# Floats come back as strings because Redis truncates Lua numbers to integers.
TOKEN_BUCKET_SCRIPT = """
    local key = KEYS[1]
    local refill_rate = tonumber(ARGV[1])
    local capacity = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])
    local cost = tonumber(ARGV[4])
    local ttl = tonumber(ARGV[5])

    if now < 0 then
        local t = redis.call('TIME')
        now = tonumber(t[1]) + tonumber(t[2]) / 1000000
    end

    -- Missing key is a full bucket (lazy creation)
    local tokens = capacity
    local last_refill = now
    local recovered = 0

    local raw = redis.pcall('HMGET', key, 'tokens', 'ts')
    if type(raw) == 'table' and raw.err then
        -- Key holds another type: discard it
        redis.call('DEL', key)
        recovered = 1
    elseif raw[1] or raw[2] then
        local stored_tokens = tonumber(raw[1])
        local stored_ts = tonumber(raw[2])
        if stored_tokens and stored_ts
            and stored_tokens == stored_tokens
            and stored_tokens >= 0 and stored_tokens < math.huge
            and stored_ts >= 0 then
            tokens = stored_tokens
            last_refill = stored_ts / 1000000
        else
            recovered = 1
        end
    end

    local delta = math.max(0, now - last_refill)
    local refilled = math.max(0, math.min(capacity, tokens + delta * refill_rate))

    local allowed = 0
    local retry_after = '0'
    if refilled >= cost then
        tokens = refilled - cost
        allowed = 1
    else
        tokens = refilled
        if cost > capacity or refill_rate == 0 then
            retry_after = 'inf'
        else
            retry_after = string.format('%.17g', math.max(0, (cost - refilled) / refill_rate))
        end
    end

    local encoded_tokens = string.format('%.17g', tokens)
    redis.call('HSET', key,
        'v', '1',
        'tokens', encoded_tokens,
        'ts', string.format('%.0f', now * 1000000))

    if ttl > 0 then
        redis.call('EXPIRE', key, ttl)
    else
        redis.call('PERSIST', key)
    end

    return {allowed, encoded_tokens, retry_after, recovered}
"""

TOKEN_BUCKET_SCRIPT_SHA = hashlib.sha1(TOKEN_BUCKET_SCRIPT.encode()).hexdigest()
