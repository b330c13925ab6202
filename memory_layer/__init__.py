"""
Storage layer for consent-scoped memory records.
"""
