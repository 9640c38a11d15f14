"""
Realtime Client for the voice session stack.

Captures local audio, negotiates a WebRTC transport with the realtime speech
provider using an ephemeral credential from the Credential Broker, and runs
the conversation lifecycle (start / pause / resume / restart / stop / mute).

Presentation layers only consume ConversationManager output and issue
commands; they never touch the transport directly.
"""
