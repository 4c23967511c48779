"""Statistical model plumbing.

Chunking, input checks, retry policy, the background inference worker,
NER backends and content-free inference metrics.
"""
