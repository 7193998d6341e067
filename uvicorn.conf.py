from gateguard.core.config import get_settings

settings = get_settings()

host = settings.BACKEND_HOST
port = settings.BACKEND_PORT
log_level = "debug" if settings.DEBUG else "info"
# Gate pass timers live in-process; extra workers re-arm the same deadlines and the late fires are no-ops.
workers = 1 if settings.DEBUG else 2
