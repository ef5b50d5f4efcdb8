"""
stax
====

Pull WordPress sites from WP Engine into local DDEV environments: database
export and import, wp-content synchronization, serialization-safe URL
rewriting and local database snapshots.
"""

__version__ = "0.1.0"
