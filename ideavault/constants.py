APP_NAME = "IdeaVault"
SCHEMA_VERSION = "2"

PROJECT_COUNTER = "projectId"
CONTENT_COUNTER = "contentId"

DEFAULT_SETTINGS = {
    "recent_window_days": 7,
}
