"""rookery, a Merkle search tree engine for AT Protocol personal data servers.

https://atproto.com/specs/repository
"""
