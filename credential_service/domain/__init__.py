"""Account records, lifecycle state machine and session issuance."""
