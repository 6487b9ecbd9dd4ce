from .google_groups import GOOGLE_GROUPS_CONFIG

REGISTRY = {
    "google_groups": GOOGLE_GROUPS_CONFIG,
}
