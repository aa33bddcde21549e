"""
Identity Resolution

Resolves AT Protocol handles to DIDs (DNS TXT and HTTPS well-known) and DIDs
to their handle and PDS endpoint (did:plc via the PLC directory, did:web via
did.json).
"""
