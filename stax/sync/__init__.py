"""
File synchronization over SFTP
"""
