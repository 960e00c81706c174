"""
cloudpoll - change feed polling for cloud storage accounts.

Polls Box, Dropbox and Google Drive accounts for changes, normalizes
them into download / make_directory / delete actions and mirrors them
into a local sync folder.
"""

__version__ = "0.1.0"
