"""
Lua scripts executed atomically on the Redis server.

Window cutoffs use the server clock (``TIME``) so counting and cutoff happen in
the same atomic step regardless of caller clock skew.
"""

# KEYS[1]: sample series; ARGV[1]: window seconds
THROUGHPUT_IN_WINDOW = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local time = redis.call('TIME')
local now = tonumber(time[1]) + tonumber(time[2]) / 1000000
return redis.call('ZCOUNT', key, now - window, '+inf')
"""

# KEYS[1]: sample series; ARGV[1]: window seconds
# Returns {count, average} with the average as a string (integer replies truncate).
AVERAGE_IN_WINDOW = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local time = redis.call('TIME')
local now = tonumber(time[1]) + tonumber(time[2]) / 1000000
local samples = redis.call('ZRANGEBYSCORE', key, now - window, '+inf')

local sum = 0
local count = 0
for i = 1, #samples do
    local value = tonumber(string.match(samples[i], ':([^:]*)$'))
    if value then
        sum = sum + value
        count = count + 1
    end
end

if count == 0 then
    return {0, '0'}
end
return {count, tostring(sum / count)}
"""

# KEYS[1]: worker hash; KEYS[2]: staleness index
# ARGV: worker_id, connection, queue, state, current_job_id, current_job_class,
#       pid, hostname, memory_usage_mb, cpu_usage_percent, now, ttl
UPDATE_WORKER_HEARTBEAT = """
local workerKey = KEYS[1]
local indexKey = KEYS[2]

local workerId = ARGV[1]
local newState = ARGV[4]
local currentJobId = ARGV[5]
local memoryUsageMb = tonumber(ARGV[9]) or 0
local now = tonumber(ARGV[11])
local ttl = tonumber(ARGV[12])

local raw = redis.call('HGETALL', workerKey)
local existing = {}
for i = 1, #raw, 2 do
    existing[raw[i]] = raw[i + 1]
end

local previousState = existing['state']
local lastHeartbeat = tonumber(existing['last_heartbeat']) or now
local idleTime = tonumber(existing['idle_time_seconds']) or 0
local busyTime = tonumber(existing['busy_time_seconds']) or 0
local jobsProcessed = tonumber(existing['jobs_processed']) or 0
local peakMemory = tonumber(existing['peak_memory_usage_mb']) or 0
local lastStateChange = tonumber(existing['last_state_change']) or now

-- elapsed time belongs to the state that was active during the interval
local elapsed = now - lastHeartbeat
if elapsed < 0 then
    elapsed = 0
end
if previousState == 'idle' then
    idleTime = idleTime + elapsed
elseif previousState == 'busy' then
    busyTime = busyTime + elapsed
end

if previousState == 'busy' and newState == 'idle' and currentJobId == '' then
    jobsProcessed = jobsProcessed + 1
end

if previousState ~= newState then
    lastStateChange = now
end

peakMemory = math.max(peakMemory, memoryUsageMb)

redis.call('HSET', workerKey,
    'worker_id', workerId,
    'connection', ARGV[2],
    'queue', ARGV[3],
    'state', newState,
    'last_heartbeat', tostring(now),
    'last_state_change', tostring(lastStateChange),
    'current_job_id', currentJobId,
    'current_job_class', ARGV[6],
    'idle_time_seconds', tostring(idleTime),
    'busy_time_seconds', tostring(busyTime),
    'jobs_processed', tostring(jobsProcessed),
    'pid', ARGV[7],
    'hostname', ARGV[8],
    'memory_usage_mb', ARGV[9],
    'cpu_usage_percent', ARGV[10],
    'peak_memory_usage_mb', tostring(peakMemory)
)

redis.call('ZADD', indexKey, now, workerId)
redis.call('EXPIRE', workerKey, ttl)
redis.call('EXPIRE', indexKey, ttl)

return jobsProcessed
"""

# KEYS[1]: worker hash; ARGV: state, at, ttl
# Returns 1 when the worker existed and was updated, 0 otherwise.
TRANSITION_WORKER_STATE = """
local workerKey = KEYS[1]
if redis.call('EXISTS', workerKey) == 0 then
    return 0
end
redis.call('HSET', workerKey, 'state', ARGV[1], 'last_state_change', ARGV[2])
redis.call('EXPIRE', workerKey, tonumber(ARGV[3]))
return 1
"""

# KEYS[1]: worker hash; ARGV: cutoff, at, ttl
# Marks the worker crashed only while its last heartbeat is still before the
# cutoff and it is in an active state. Returns 1 when marked.
MARK_WORKER_CRASHED = """
local workerKey = KEYS[1]
local cutoff = tonumber(ARGV[1])
local fields = redis.call('HMGET', workerKey, 'state', 'last_heartbeat')
local state = fields[1]
local lastHeartbeat = tonumber(fields[2])

if not state or not lastHeartbeat or lastHeartbeat >= cutoff then
    return 0
end
if state ~= 'idle' and state ~= 'busy' and state ~= 'paused' then
    return 0
end

redis.call('HSET', workerKey, 'state', 'crashed', 'last_state_change', ARGV[2])
redis.call('EXPIRE', workerKey, tonumber(ARGV[3]))
return 1
"""
