"""Redis Lua scripts for sliding-window rate limiting.

These scripts provide atomic operations to prevent TOCTOU race conditions
when checking and admitting requests across multiple instances.
"""

# Lua script for atomic purge, count and conditional admit on one sorted set.
# Redis runs the whole script before serving any other command, so two
# processes can never both observe count < limit and both admit.
#
# KEYS[1]: window key (sorted set, member per admitted request, score = timestamp)
# ARGV[1]: now (Unix seconds, float)
# ARGV[2]: window start (Unix seconds, float); entries scored below it are dropped
# ARGV[3]: request limit
# ARGV[4]: key TTL in seconds
# ARGV[5]: unique member for the new entry
#
# Returns {admitted (0|1), count after the call, oldest score or nil}.
# The oldest score is returned as the string ZRANGE yields: a Lua number
# would be truncated to an integer reply.
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local limit = tonumber(ARGV[3])
    local ttl = tonumber(ARGV[4])
    local member = ARGV[5]

    -- Drop entries strictly older than the window start
    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. ARGV[2])
    local count = redis.call('ZCARD', key)

    if count >= limit then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        return {0, count, oldest[2] or false}
    end

    redis.call('ZADD', key, now, member)
    redis.call('EXPIRE', key, ttl)

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {1, count + 1, oldest[2]}
"""
