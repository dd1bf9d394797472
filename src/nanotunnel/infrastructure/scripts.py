"""Central registry for Redis Lua scripts used by the repositories.

Scripts are registered at startup for EVALSHA and return a two-element
array ``{code, value}``:

    - 0: Rejected - the precondition did not hold. The second element is the
         document currently stored, so the caller can re-read and retry.

    - 1: Success saved - the second element is the document written.

    - 2: Missing - the tunnel key does not exist. The second element is an
         empty string.

Scripts never decode the tunnel JSON. Amounts are u64 and Lua numbers are
doubles, so all arithmetic happens in Python and the scripts only compare
and swap whole documents.
"""

LEDGER_SCRIPTS = {
    "create_tunnel": """
        local tunnel_key = KEYS[1]
        local owner_index_key = KEYS[2]
        local new_val = ARGV[1]
        local created_ts = tonumber(ARGV[2])
        local channel_id = ARGV[3]

        local current_raw = redis.call('GET', tunnel_key)
        if current_raw then
            return {0, current_raw}
        end

        redis.call('SET', tunnel_key, new_val)
        redis.call('ZADD', owner_index_key, created_ts, channel_id)
        return {1, new_val}
    """,
    "compare_and_swap_tunnel": """
        local tunnel_key = KEYS[1]
        local expected_val = ARGV[1]
        local new_val = ARGV[2]

        local current_raw = redis.call('GET', tunnel_key)
        if not current_raw then
            return {2, ''}
        end
        if current_raw ~= expected_val then
            return {0, current_raw}
        end

        redis.call('SET', tunnel_key, new_val)
        return {1, new_val}
    """,
}

API_KEY_SCRIPTS = {
    "create_api_key": """
        local public_key_index = KEYS[1]
        local record_key = KEYS[2]
        local owner_index_key = KEYS[3]
        local key_id = ARGV[1]
        local new_val = ARGV[2]
        local created_ts = tonumber(ARGV[3])

        local existing_id = redis.call('GET', public_key_index)
        if existing_id then
            return {0, existing_id}
        end

        redis.call('SET', public_key_index, key_id)
        redis.call('SET', record_key, new_val)
        redis.call('ZADD', owner_index_key, created_ts, key_id)
        return {1, new_val}
    """,
}
