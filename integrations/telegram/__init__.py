"""
Telegram integration module.

Contains the Telethon user client and the inbound message listener.
"""

from .user_client import TelethonUserClient, get_client

__all__ = ['TelethonUserClient', 'get_client']
