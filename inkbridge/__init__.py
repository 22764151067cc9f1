"""InkBridge: reMarkable to OneNote synchronization pipeline.

Moves handwritten pages from a reMarkable tablet into OneNote notebook
pages:

  - device: SSH/SFTP session and on-device agent deployment
  - ingest: local HTTP listener receiving pages pushed by the agent
  - store:  durable record of every page's sync lifecycle
  - sync:   upload queue processor and automatic sync scheduler
  - cloud:  OneNote (Microsoft Graph) client

Quickstart::

    python -m inkbridge.server
"""

__version__ = "1.0.0"
