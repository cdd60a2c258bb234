"""
AT Protocol Integration

This package authenticates against the OAuth token endpoint, keeps the
session's access token fresh, and publishes check-ins to the user's Personal
Data Server (PDS).

Key Components:
- store.py: Credential store contract and its in-memory, file and Redis backends
- oauth.py: Password and refresh token grants against the token endpoint
- refresh.py: Refresh with bounded exponential backoff
- session.py: Session state machine with single-flight refresh
- chain.py: Middleware chain for API requests (bearer token, user agent, metrics)
- records.py: PDS record primitives (createRecord, getRecord, uploadBlob)
- publisher.py: Address then check-in publishing linked by StrongRef
- crosspost.py, richtext.py: Optional feed post with byte-offset facets

The publishing flow follows these steps:
1. Obtain a fresh access token from the session (refreshing if needed)
2. Write the address record and keep the uri and cid the PDS returned
3. Write the check-in record referencing the address by StrongRef
4. Optionally crosspost to the feed; failures there are warnings only
"""
