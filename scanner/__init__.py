"""
Scanner package: GitHub gateway, commit index writer, matcher and
GitHub-wide candidate discovery.
"""
