"""
Identity Resolution

Resolves AT Protocol handles and DIDs to the account's DID, handle and
Personal Data Server (PDS) endpoint. The session manager uses it when the token
endpoint does not report where the account's repository lives.

Resolution Types:
1. Handle Resolution
   - DNS-based resolution via TXT records (_atproto.{handle})
   - HTTP-based resolution via well-known endpoints (.well-known/atproto-did)

2. DID Resolution
   - did:plc method resolution via PLC directory
   - did:web method resolution via well-known endpoints
"""
