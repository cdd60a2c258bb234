"""
Data Models

This package defines the data structures shared by the Anchor core using
Pydantic. Record models carry the lexicon field names as aliases so they can be
written to and read from a PDS without hand-written (de)serialization.

Key Models:
- credentials.py: Session credentials and their freshness predicates
- session.py: Session state machine values and immutable snapshots
- records.py: StrongRef, address, check-in and crosspost lexicon records
- place.py: Places a user checks in to and the shared location read surface

Relationships:
- CheckinRecord references an AddressRecord through a StrongRef (uri + cid)
- CrosspostRecord optionally embeds a StrongRef to a CheckinRecord
"""
