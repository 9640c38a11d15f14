"""
Structured event emission shared by the Credential Broker and the Realtime Client.
"""
