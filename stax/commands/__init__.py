"""
Pipeline commands: snapshots, import, URL rewriting and the pull coordinator
"""
