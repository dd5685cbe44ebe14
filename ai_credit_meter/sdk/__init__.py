"""
SDK for the AI credit meter.

Provides the metered, cached gateway to the upstream AI provider.
"""

from .gateway import AIGateway, AIResult, InvokeOptions, parse_structured

__all__ = ["AIGateway", "AIResult", "InvokeOptions", "parse_structured"]
