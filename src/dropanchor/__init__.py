"""
Anchor - AT Protocol check-in core

This package implements the session and record-publishing core of the Anchor
check-in application. It authenticates a user against an OAuth token endpoint,
keeps the session's access token fresh, and publishes check-ins to the user's
Personal Data Server (PDS) as linked, content-addressed records.

Key Components:
- atproto: Session management, token refresh, PDS record primitives, the
  StrongRef publishing pipeline and the optional feed crosspost
- model: Pydantic models for credentials, session state and lexicon records
- resolve: Identity resolution utilities for AT Protocol DIDs and handles
- app: Configuration, metrics, background tasks and the command line entry point

Architecture Overview:
1. Authentication Flow:
   - User logs in with handle and app password
   - Credentials are persisted through a pluggable credential store
   - Access tokens are refreshed before expiry, with bounded retry and backoff

2. Publishing Flow:
   - An address record is written and its CID is read back from the PDS
   - A check-in record references the address record by URI and CID (StrongRef)
   - An optional feed post links back to the check-in, best-effort only
"""
