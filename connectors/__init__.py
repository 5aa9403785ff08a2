"""
connectors — provider integrations for CRM / helpdesk platforms.

Provides a generic provider framework that handles:
  • OAuth2 auth-URL generation
  • Callback handling (code → token exchange)
  • Per-connection token storage & refresh-ahead
  • AES-256-GCM encryption of tokens at rest
  • Paginated contact / interaction fetches with normalisation
  • Revocation / disconnect

Each provider (HubSpot, Pipedrive, Zendesk) is a subclass of BaseProvider.
"""
