"""
connectors — OAuth integrations between tenants and external services.

Provides a generic provider framework that handles:
  • OAuth auth-URL generation with signed, expiring state
  • Callback handling (grant → token exchange)
  • AES-256-GCM encryption of tokens at rest
  • Token validation and refresh with retry
  • Fan-out of record changes to every connected channel

Each provider (Slack, Jira, GitHub, Trello) is a subclass of IntegrationProvider.
"""
