"""PayWay transaction reconciliation service."""
