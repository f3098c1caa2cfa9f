"""
nexustransfer - serverless chat and file transfer between machines on a LAN
"""

__version__ = "0.1.0"
