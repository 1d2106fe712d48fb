"""Tokens shared by the status endpoint and the client poller.

Both values are part of the client contract and must stay stable.
"""

STREAM_MEDIA_TYPE = "text/vnd.turbo-stream.html"
TERMINAL_MARKER = "complete-flag"
