"""
Corpus discovery: finds repositories worth indexing so that copies have
something to be matched against.
"""
