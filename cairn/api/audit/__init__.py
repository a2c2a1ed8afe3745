"""Read-only freshness and lag endpoints plus the refresh trigger."""
