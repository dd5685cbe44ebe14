"""
Core modules for the AI credit meter.

This package contains credit policy, charging, guest tracking, the
response cache, pricing and the per-request cost guardrail.
"""
