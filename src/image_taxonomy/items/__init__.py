"""Work item store, status state machine, and submission service."""
