"""
Credential Broker for the realtime voice session stack.

Holds the long-lived provider key and mints single-use, short-lived session
credentials for clients. The long-lived key never leaves this process.
"""
