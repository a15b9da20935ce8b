"""
Services shared by the indexer: chain access, decoding and storage.
"""
