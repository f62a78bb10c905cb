from .settings import BackendMode, Settings, DEFAULT_SETTINGS  # noqa: F401
