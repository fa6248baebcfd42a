"""
Protocol integrations and the session plumbing they share.
"""
