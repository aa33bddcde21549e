"""
AT Protocol Integration

OAuth client pieces used by the Bluesky identity provider:

- dpop.py: DPoP proof generation and nonce-retrying token requests
- pds.py: Authorization server discovery and AppView profile lookups
- identity.py: `BlueskyIdentityProvider`, the PKCE + PAR + DPoP public client
"""
