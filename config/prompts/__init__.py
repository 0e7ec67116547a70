"""
Prompts module - LLM prompts for the reply bot.

Contains prompt templates for:
- mention_reply.py: Single-shot reply to a mention, plus the fallback text
"""

from config.prompts.mention_reply import FALLBACK_RESPONSE, MENTION_REPLY_PROMPT

__all__ = [
    "FALLBACK_RESPONSE",
    "MENTION_REPLY_PROMPT",
]
