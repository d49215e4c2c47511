"""Abstract contracts for the external collaborators.

Key Components:
    - AIProvider: analyze, generate_plan, generate_code
    - GitPlatform: branches, commits, pull requests, CI and comments
"""
