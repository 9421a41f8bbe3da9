"""Content moderation pipeline.

Self-contained modules:
- classifier (deterministic text/image rules, PII detection)
- flagging (automatic decisions + running statistics)
- queue (priority review queue)
- workflow (moderator decisions, automatic penalties)
- penalties / appeals (ledger, reversal on approved appeals)
"""
