# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real secrets. Put them in .env (local, gitignored).

This file exists to make the repo self-documenting even without opening .env.
"""

ENV_VARS = {
    # App / logging
    "ONTRACK_APP_NAME": "App display name (default: ontrack).",
    "ONTRACK_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Connectors
    "ONTRACK_CONSOLE_ENABLED": "Enable the console command loop (true/false, default: true).",
    "ONTRACK_MATRIX_ENABLED": "Deliver notifications to Matrix (true/false, default: false).",
    # Paths (gitignored)
    "ONTRACK_DATA_DIR": "Local data directory (default: .local/ontrack).",
    "ONTRACK_TASKS_DB_PATH": "Task store SQLite path (default: <data_dir>/tasks.sqlite3).",
    "ONTRACK_MATRIX_STORE_PATH": "Matrix session directory (default: <data_dir>/matrix_store).",
    # Schedule / sync tuning
    "ONTRACK_GRANULARITY_SECONDS": "Solver interval size in seconds (default: 300).",
    "ONTRACK_INTERVAL_EPOCH": "Instant of interval 0, ISO-8601 (default: 2020-01-01T00:00:00Z).",
    "ONTRACK_MIN_SYNC_INTERVAL": "Minimum seconds between two sync attempts (default: 2.0).",
    "ONTRACK_SYNC_INTERVAL": "Seconds between periodic syncs (default: 60.0).",
    "ONTRACK_CLOCK_INTERVAL": "Seconds between notification checks (default: 1.0).",
    "ONTRACK_FALLBACK_MODELS": "Recent models to probe when the current one has no solutions (default: 5).",
    # Remote solver (Supabase / PostgREST)
    "ONTRACK_SUPABASE_URL": "Project URL (also read from SUPABASE_URL). Empty => offline only.",
    "ONTRACK_SUPABASE_API_KEY": "Anon/service API key (also read from SUPABASE_ANON_KEY).",
    "ONTRACK_SUPABASE_ACCESS_TOKEN": "Optional user JWT; the API key is used as bearer when empty.",
    "ONTRACK_SUPABASE_USER_ID": "User whose current model is synced.",
    "ONTRACK_HTTP_TIMEOUT": "HTTP read timeout in seconds (default: 30.0).",
    # Matrix
    "ONTRACK_MATRIX_HOMESERVER": "Matrix homeserver URL.",
    "ONTRACK_MATRIX_USER_ID": "Matrix user ID (bot).",
    "ONTRACK_MATRIX_PASSWORD": "Password for first login (session stored locally).",
    "ONTRACK_MATRIX_NOTIFY_ROOM": "Room ID that receives notifications and accepts command replies.",
}
