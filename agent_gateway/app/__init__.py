"""
Agent Gateway Application
=========================

FastAPI service that authenticates browser clients and relays live
conversational-agent sessions to the upstream streaming agent API.

Packages:
- auth: session token issuance and validation
- upstream: authenticated connection to the upstream agent service
- realtime: WebSocket gateway endpoint and the bidirectional session relay
"""
