"""
Mention Reply Prompt - Instructions for answering a single Bluesky mention.

Used by ResponseWorker. Contains {user_message} placeholder for the cleaned mention text.
"""

MENTION_REPLY_PROMPT = """You are a helpful AI assistant responding to a message on Bluesky (microblogging social media service).
Please provide a thoughtful, engaging, and helpful response to the following user message.
Keep your response concise and appropriate for social media (maximum 300 characters).

User message:
{user_message}
"""

# Sent when every generation attempt for a mention has failed
FALLBACK_RESPONSE = (
    "I apologize, but I'm unable to generate a response at this time. "
    "Please try again later."
)
