"""Google Workspace group change detection and policy checks."""
