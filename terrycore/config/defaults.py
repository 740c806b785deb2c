"""
Default settings for terrycore.

These are the default values used when no user configuration exists.
"""

DEFAULT_SETTINGS = {
    "version": "1.0.0",

    # Maximum concurrent provider calls during apply
    "parallelism": 10,

    # Read live attributes before planning
    "refresh": True,

    "log_level": "INFO",

    # State locking
    "lock": {
        "timeout": 0.0,  # seconds to wait for a held lock; 0 fails fast
        "retry_interval": 1.0,
    },

    # Local state backend
    "state": {
        "path": "terrycore.tfstate.json",
        "backup": True,
    },

    # State viewer
    "viewer": {
        "font_family": "monospace",
        "font_size": 9,
        # Always masked, in addition to each resource type's sensitive fields
        "sensitive_fields": ["password", "secret", "token"],
    },
}
