"""Session orchestration and reconciliation engine."""
