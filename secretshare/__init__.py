"""
secretshare - share one file between two peers, end-to-end encrypted
to the receiver's OpenPGP key after a human-approved identity handshake.
"""

__version__ = "1.0.0"
APP_NAME = "secretshare"
