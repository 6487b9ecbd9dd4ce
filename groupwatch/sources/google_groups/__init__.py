from .source import (
    EXCLUDED_KEYS,
    EXPECTED_SETTINGS,
    GOOGLE_GROUPS_CONFIG,
    GoogleWorkspaceClient,
    GroupNotFound,
    WorkspaceApiError,
    build_session,
    load_policy,
    make_google_source,
    normalize_directory_group,
)
