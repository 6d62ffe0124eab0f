# config.example.py

"""
Documentation-only module (safe to commit).

The real configuration is loaded from environment variables (optionally via a local .env file).
Do NOT commit real secrets; keep them in .env (local, gitignored).
"""

ENV_VARS = {
    # App / logging
    "TASKPULSE_APP_NAME": "App display name (default: taskpulse).",
    "TASKPULSE_LOG_LEVEL": "Console logging level (default: INFO). The log file always gets DEBUG.",
    # Paths (gitignored)
    "TASKPULSE_DATA_DIR": "Local data directory (default: .local/taskpulse).",
    "TASKPULSE_TASKS_DB_PATH": "TaskStore SQLite path (default: <data_dir>/tasks.sqlite3).",
    "TASKPULSE_OWNERS_PATH": "Owner registry JSON (default: <data_dir>/owners.json).",
    # Heartbeat
    "TASKPULSE_HEARTBEAT_SECONDS": "Tick period in seconds (default: 30).",
    "TASKPULSE_DISPATCH_WAIT_SECONDS": (
        "How long a tick waits for owner dispatchers before leaving them in flight "
        "(default: the tick period; 0 waits for all)."
    ),
    "TASKPULSE_DEFAULT_TIMEZONE": "Time zone for HOURLY/DAILY/WEEKLY boundaries (default: UTC).",
    # Executor
    "TASKPULSE_EXECUTOR_URL": "Agent gateway base URL (default: http://127.0.0.1:8700).",
    "TASKPULSE_EXECUTOR_TOKEN": "Bearer token for the agent gateway (optional).",
    "TASKPULSE_EXECUTOR_TIMEOUT_SECONDS": "Per-task executor timeout (default: 600).",
    # Matrix
    "TASKPULSE_MATRIX_ENABLED": "Enable Matrix notifications and owner commands (true/false).",
    "TASKPULSE_MATRIX_HOMESERVER": "Matrix homeserver URL.",
    "TASKPULSE_MATRIX_USER_ID": "Matrix user ID (bot).",
    "TASKPULSE_MATRIX_PASSWORD": "Password for first login (session stored locally).",
    "TASKPULSE_MATRIX_STORE_PATH": "Matrix session directory (default: <data_dir>/matrix_store).",
    # Schedule digest
    "TASKPULSE_SCHEDULE_MARKERS": (
        "Description markers that add the schedule digest for schedule_context owners "
        "(comma list, default: PLANNING_KIND,REPORT_KIND)."
    ),
    "TASKPULSE_SCHEDULE_HORIZON_HOURS": "How far ahead the schedule digest looks (default: 168).",
}

OWNERS_EXAMPLE = {
    "owners": [
        {
            "id": "research",
            "name": "Research",
            "kind": "generic",
            "agent_id": "research-agent",
            "channel_id": "!research:example.org",
            "description": "Collects and summarizes sources.",
            "auto_dispatch": True,
        },
        {
            "id": "planner",
            "name": "Planner",
            "kind": "generic",
            "agent_id": "planner-agent",
            "channel_id": "!planner:example.org",
            "auto_dispatch": True,
            "schedule_context": True,
        },
        {
            "id": "journal",
            "name": "Journal",
            "kind": "context",
            "agent_id": "journal-agent",
            "channel_id": "!journal:example.org",
            "auto_dispatch": False,
            "model_hint": "fast",
        },
    ]
}
