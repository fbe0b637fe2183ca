"""Inbound messaging channels (Telegram, WhatsApp).

Channel adapters are transport-only: they parse provider webhooks, claim
each message through the ingestion protocol, forward it to the chat core,
and send the reply back.
"""

__all__ = ["base", "telegram", "whatsapp"]
