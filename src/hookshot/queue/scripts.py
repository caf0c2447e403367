"""Lua scripts implementing the atomic queue transitions.

Every state change of a job happens inside one script so that a crash at
any point leaves the job in exactly one list or set. Keys are laid out under
``<prefix>:<queue>:``:

* ``wait`` / ``paused`` / ``active``: lists of job IDs
* ``delayed`` / ``completed`` / ``failed``: sorted sets scored by epoch ms
* ``stalled``: set of active IDs seen by the last stall check
* ``meta``: hash holding the ``paused`` flag
* ``job:<id>``: hash with the job record and its counters
* ``lock:<id>``: lease token with a millisecond TTL

New jobs are pushed on the left and consumed from the right, so ``wait`` is
FIFO. High-priority and stall-recovered jobs are pushed on the right.
"""

# Shared retention helper: drop finished entries by age, then by count.
_TRIM = """
local function trim(key, prefix, now, keepAge, keepCount)
    if keepAge > 0 then
        local expired = redis.call('ZRANGEBYSCORE', key, '-inf', now - keepAge)
        for _, id in ipairs(expired) do
            redis.call('DEL', prefix .. 'job:' .. id)
        end
        redis.call('ZREMRANGEBYSCORE', key, '-inf', now - keepAge)
    end
    if keepCount >= 0 then
        local excess = redis.call('ZRANGE', key, 0, -(keepCount + 1))
        for _, id in ipairs(excess) do
            redis.call('DEL', prefix .. 'job:' .. id)
        end
        if #excess > 0 then
            redis.call('ZREMRANGEBYRANK', key, 0, #excess - 1)
        end
    end
end
"""

# KEYS: wait, paused, delayed, meta, job
# ARGV: id, data, maxAttempts, backoff, timestamp, delay, priority
ADD_JOB = """
if redis.call('EXISTS', KEYS[5]) == 1 then
    return 0
end
redis.call('HSET', KEYS[5],
    'data', ARGV[2],
    'attemptsMade', 0,
    'maxAttempts', ARGV[3],
    'backoff', ARGV[4],
    'stalledCounter', 0,
    'timestamp', ARGV[5])

local delay = tonumber(ARGV[6])
if delay > 0 then
    redis.call('ZADD', KEYS[3], tonumber(ARGV[5]) + delay, ARGV[1])
    return 1
end

local target = KEYS[1]
if redis.call('HGET', KEYS[4], 'paused') == '1' then
    target = KEYS[2]
end
if ARGV[7] == 'high' then
    redis.call('RPUSH', target, ARGV[1])
else
    redis.call('LPUSH', target, ARGV[1])
end
return 1
"""

# KEYS: job, lock, stalled, active
# ARGV: token, lockDuration, now, id
# Returns 1 when the lease was taken, 0 when another holder has it,
# -1 when the job record no longer exists.
ACQUIRE_LEASE = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    redis.call('LREM', KEYS[4], -1, ARGV[4])
    return -1
end
if redis.call('SET', KEYS[2], ARGV[1], 'PX', ARGV[2], 'NX') then
    redis.call('HSET', KEYS[1], 'processedOn', ARGV[3])
    redis.call('SREM', KEYS[3], ARGV[4])
    return 1
end
return 0
"""

# KEYS: lock, stalled
# ARGV: token, lockDuration, id
EXTEND_LOCK = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
    redis.call('SREM', KEYS[2], ARGV[3])
    return 1
end
return 0
"""

# KEYS: active, target (completed or failed), job, lock
# ARGV: id, token, now, field, value, keepAge, keepCount, prefix
# Returns attemptsMade after the increment, or -1 when the lease was lost.
MOVE_TO_FINISHED = _TRIM + """
if redis.call('GET', KEYS[4]) ~= ARGV[2] then
    return -1
end
if redis.call('LREM', KEYS[1], -1, ARGV[1]) == 0 then
    return -1
end
redis.call('DEL', KEYS[4])
local attempts = redis.call('HINCRBY', KEYS[3], 'attemptsMade', 1)
redis.call('HSET', KEYS[3], 'finishedOn', ARGV[3], ARGV[4], ARGV[5])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
trim(KEYS[2], ARGV[8], tonumber(ARGV[3]), tonumber(ARGV[6]), tonumber(ARGV[7]))
return attempts
"""

# KEYS: active, delayed, job, lock
# ARGV: id, token, now, delay, failedReason
# Returns attemptsMade after the increment, or -1 when the lease was lost.
RETRY_JOB = """
if redis.call('GET', KEYS[4]) ~= ARGV[2] then
    return -1
end
if redis.call('LREM', KEYS[1], -1, ARGV[1]) == 0 then
    return -1
end
redis.call('DEL', KEYS[4])
local attempts = redis.call('HINCRBY', KEYS[3], 'attemptsMade', 1)
redis.call('HSET', KEYS[3], 'failedReason', ARGV[5])
redis.call('ZADD', KEYS[2], tonumber(ARGV[3]) + tonumber(ARGV[4]), ARGV[1])
return attempts
"""

# KEYS: delayed, wait, paused, meta
# ARGV: now, limit
PROMOTE_DELAYED = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
if #ids == 0 then
    return 0
end
local target = KEYS[2]
if redis.call('HGET', KEYS[4], 'paused') == '1' then
    target = KEYS[3]
end
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('LPUSH', target, id)
end
return #ids
"""

# KEYS: stalled, wait, active, failed, stalledCheck, paused, meta
# ARGV: prefix, now, maxStalledCount, interval, keepAge, keepCount
# Returns {recovered ids, dead ids}. Runs at most once per interval across
# all workers sharing the queue.
MOVE_STALLED = _TRIM + """
if not redis.call('SET', KEYS[5], ARGV[2], 'PX', ARGV[4], 'NX') then
    return {{}, {}}
end

local recovered = {}
local dead = {}
local now = tonumber(ARGV[2])
local maxStalled = tonumber(ARGV[3])
local target = KEYS[2]
if redis.call('HGET', KEYS[7], 'paused') == '1' then
    target = KEYS[6]
end

for _, id in ipairs(redis.call('SMEMBERS', KEYS[1])) do
    local jobKey = ARGV[1] .. 'job:' .. id
    if redis.call('EXISTS', ARGV[1] .. 'lock:' .. id) == 0
        and redis.call('LREM', KEYS[3], 1, id) > 0
        and redis.call('EXISTS', jobKey) == 1 then
        local count = redis.call('HINCRBY', jobKey, 'stalledCounter', 1)
        if count > maxStalled then
            redis.call('HSET', jobKey,
                'failedReason', 'job stalled more than allowable limit',
                'finishedOn', now)
            redis.call('ZADD', KEYS[4], now, id)
            table.insert(dead, id)
        else
            redis.call('RPUSH', target, id)
            table.insert(recovered, id)
        end
    end
end
if #dead > 0 then
    trim(KEYS[4], ARGV[1], now, tonumber(ARGV[5]), tonumber(ARGV[6]))
end

redis.call('DEL', KEYS[1])
for _, id in ipairs(redis.call('LRANGE', KEYS[3], 0, -1)) do
    redis.call('SADD', KEYS[1], id)
end
return {recovered, dead}
"""

# KEYS: source, destination, meta
# ARGV: paused flag to set ('1' or '0')
SET_PAUSED = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    if redis.call('EXISTS', KEYS[2]) == 0 then
        redis.call('RENAME', KEYS[1], KEYS[2])
    else
        while redis.call('LMOVE', KEYS[1], KEYS[2], 'RIGHT', 'LEFT') do end
    end
end
if ARGV[1] == '1' then
    redis.call('HSET', KEYS[3], 'paused', '1')
else
    redis.call('HDEL', KEYS[3], 'paused')
end
return 1
"""

# KEYS: limiter
# ARGV: max, duration, now, member
# Sliding window claim limiter. Returns {allowed, retry after ms}.
RATE_LIMIT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local duration = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

-- Remove claims outside the window
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - duration)

local count = redis.call('ZCARD', key)
if count >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local wait = duration
    if #oldest == 2 then
        wait = tonumber(oldest[2]) + duration - now
    end
    if wait < 1 then
        wait = 1
    end
    return {0, wait}
end

redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, duration * 2)
return {1, 0}
"""

# KEYS: state key to clear (zset or list)
# ARGV: prefix, kind ('zset' or 'list'), limit, max score (zsets only)
# Deletes job records along with their index entries.
CLEAN = """
local ids
if ARGV[2] == 'zset' then
    ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[4], 'LIMIT', 0, tonumber(ARGV[3]))
else
    ids = redis.call('LRANGE', KEYS[1], 0, tonumber(ARGV[3]) - 1)
end
for _, id in ipairs(ids) do
    redis.call('DEL', ARGV[1] .. 'job:' .. id, ARGV[1] .. 'lock:' .. id)
    if ARGV[2] == 'zset' then
        redis.call('ZREM', KEYS[1], id)
    else
        redis.call('LREM', KEYS[1], 1, id)
    end
end
return #ids
"""
