"""
Natural-language portfolio command agent and ledger engine.
"""
