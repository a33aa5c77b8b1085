"""Redis Lua scripts for admission control.

Each script runs inside Redis' single-threaded script engine, so the read,
the decision and the write happen with no other command interleaved. This
is what prevents two instances from both admitting against the same
pre-image of a tenant's bucket.
"""

# Atomic admission decision.
# The clock comes from Redis TIME so that every caller decays the bucket
# against the same time source, whatever its local clock says.
# The external throttle state is a hash; any missing, non-numeric or
# out-of-range field (or a key of the wrong type) makes the whole snapshot
# unusable and the decision falls back to the internally tracked level.
# Floats are written with %.17g so they round-trip exactly, and returned as
# strings because Redis truncates Lua numbers to integer replies.
DECIDE_SCRIPT = """
    local token_key = KEYS[1]
    local timestamp_key = KEYS[2]
    local state_key = KEYS[3]
    local concurrency_key = KEYS[4]
    local debug_key = KEYS[5]

    local cost = tonumber(ARGV[1])
    local tokens_per_second = tonumber(ARGV[2])
    local bucket_capacity = tonumber(ARGV[3])
    local max_concurrency = tonumber(ARGV[4])
    local base_margin = tonumber(ARGV[5])
    local concurrency_multiplier = tonumber(ARGV[6])
    local concurrency_factor_config = tonumber(ARGV[7])
    local base_factor = tonumber(ARGV[8])
    local debug = ARGV[9] == '1'
    local concurrency_ttl = tonumber(ARGV[10])
    local debug_max_entries = tonumber(ARGV[11])
    local max_wait_time_ms = tonumber(ARGV[12])

    local function finite(x)
        return x ~= nil and x == x and x ~= math.huge and x ~= -math.huge
    end

    local function fmt(x)
        return string.format('%.17g', x)
    end

    local function json_number(x)
        if finite(x) then
            return fmt(x)
        end
        return 'null'
    end

    local clock = redis.call('TIME')
    local now = tonumber(clock[1]) * 1000 + math.floor(tonumber(clock[2]) / 1000)

    local consumed = tonumber(redis.call('GET', token_key)) or 0
    local last_update = tonumber(redis.call('GET', timestamp_key)) or now
    local concurrency = tonumber(redis.call('GET', concurrency_key)) or 0
    if concurrency < 0 then
        concurrency = 0
    end

    local source = 'internal'
    local state = redis.pcall('HMGET', state_key, 'maximumAvailable', 'currentlyAvailable', 'restoreRate')
    if state.err then
        source = 'internal-fallback'
    elseif state[1] or state[2] or state[3] then
        local maximum_available = tonumber(state[1])
        local currently_available = tonumber(state[2])
        local restore_rate = tonumber(state[3])
        if finite(maximum_available) and finite(currently_available) and finite(restore_rate)
            and maximum_available > 0 and currently_available >= 0 and restore_rate > 0 then
            consumed = bucket_capacity - currently_available
            tokens_per_second = restore_rate
            bucket_capacity = maximum_available
            source = 'external'
        else
            source = 'internal-fallback'
        end
    end

    local elapsed_seconds = math.max(0, now - last_update) / 1000
    consumed = math.max(0, consumed - elapsed_seconds * tokens_per_second)

    local effective_concurrency = concurrency + 1
    local capacity_pct = 100 * (bucket_capacity - consumed) / bucket_capacity

    if capacity_pct < 30 then
        local scale = 1 + (30 - capacity_pct) / 30
        if capacity_pct < 10 then
            scale = scale * 1.5
        end
        base_margin = base_margin * scale
        concurrency_multiplier = concurrency_multiplier * scale
    end

    local safety_margin = base_margin + math.min(max_concurrency, effective_concurrency) * concurrency_multiplier
    local effective_capacity = bucket_capacity - safety_margin

    local capacity_factor = 1 + math.max(0, (30 - capacity_pct) / 30)
    local concurrency_factor = 1 + effective_concurrency / max_concurrency
    local adjusted_cost = cost * capacity_factor * concurrency_factor

    local allowed = 0
    local wait_time_ms = 0
    local remaining
    if consumed + adjusted_cost <= effective_capacity then
        local new_consumed = consumed + adjusted_cost
        redis.call('SET', token_key, fmt(new_consumed))
        redis.call('SET', timestamp_key, string.format('%d', now))
        redis.call('SET', concurrency_key, string.format('%d', concurrency + 1), 'EX', concurrency_ttl)
        allowed = 1
        remaining = math.max(0, effective_capacity - new_consumed)
    else
        local tokens_needed = adjusted_cost + consumed - effective_capacity
        local raw_wait_ms = tokens_needed / tokens_per_second * 1000 * base_factor * capacity_factor
        if raw_wait_ms >= max_wait_time_ms then
            wait_time_ms = max_wait_time_ms
        else
            wait_time_ms = math.ceil(raw_wait_ms)
        end
        remaining = math.max(0, effective_capacity - consumed)
    end

    if debug then
        local entry = '{'
            .. '"now":' .. string.format('%d', now)
            .. ',"cost":' .. fmt(cost)
            .. ',"consumed":' .. fmt(consumed)
            .. ',"bucket_capacity":' .. fmt(bucket_capacity)
            .. ',"tokens_per_second":' .. fmt(tokens_per_second)
            .. ',"concurrency":' .. string.format('%d', concurrency)
            .. ',"effective_concurrency":' .. string.format('%d', effective_concurrency)
            .. ',"capacity_pct":' .. fmt(capacity_pct)
            .. ',"base_margin":' .. fmt(base_margin)
            .. ',"concurrency_multiplier":' .. fmt(concurrency_multiplier)
            .. ',"concurrency_factor_config":' .. fmt(concurrency_factor_config)
            .. ',"safety_margin":' .. fmt(safety_margin)
            .. ',"effective_capacity":' .. fmt(effective_capacity)
            .. ',"capacity_factor":' .. fmt(capacity_factor)
            .. ',"concurrency_factor":' .. fmt(concurrency_factor)
            .. ',"adjusted_cost":' .. json_number(adjusted_cost)
            .. ',"allowed":' .. (allowed == 1 and 'true' or 'false')
            .. ',"wait_time_ms":' .. string.format('%d', wait_time_ms)
            .. ',"remaining":' .. fmt(remaining)
            .. ',"source":"' .. source .. '"'
            .. '}'
        redis.call('LPUSH', debug_key, entry)
        redis.call('LTRIM', debug_key, 0, debug_max_entries - 1)
    end

    return {allowed, wait_time_ms, fmt(remaining), source}
"""

# Floor-protected release of one concurrency slot.
# DECR keeps the key's TTL. A negative counter is repaired to 0 with a fresh
# TTL; an absent counter stays absent.
RELEASE_SCRIPT = """
    local concurrency_key = KEYS[1]
    local concurrency_ttl = tonumber(ARGV[1])

    local current = tonumber(redis.call('GET', concurrency_key))
    if current == nil then
        return 0
    end
    if current > 0 then
        return redis.call('DECR', concurrency_key)
    end
    if current < 0 then
        redis.call('SET', concurrency_key, '0', 'EX', concurrency_ttl)
    end
    return 0
"""
