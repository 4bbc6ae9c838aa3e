"""Versioned contract identifiers shared by the CLI, supervisor and shell layer."""

SBENV_VERSION = "0.1.0"

ERROR_SCHEMA_V1 = "error.v1"

# Session pointer carried by the calling shell.
ACTIVE_ENV_VAR = "SBENV_ACTIVE"

ACTIVATION_KEYS = (
    ACTIVE_ENV_VAR,
    "SBENV_ROOT",
    "SBENV_PORT",
    "SYFTBOX_DATA_DIR",
    "SYFTBOX_CONFIG_PATH",
    "SYFTBOX_SERVER_URL",
    "SYFTBOX_CLIENT_URL",
)

# Environment handed to the supervised daemon.
DAEMON_PORT_VAR = "SYFTBOX_CLIENT_PORT"
DAEMON_AUTH_VAR = "SYFTBOX_AUTH_ENABLED"
DAEMON_CONFIG_VAR = "SYFTBOX_CONFIG_PATH"
DAEMON_DATA_DIR_VAR = "SYFTBOX_DATA_DIR"
DAEMON_SERVER_URL_VAR = "SYFTBOX_SERVER_URL"

HOME_ENV_VAR = "SBENV_HOME"
DAEMON_BIN_ENV_VAR = "SBENV_DAEMON_BIN"
