"""Memory variants and the rolling summary store."""
