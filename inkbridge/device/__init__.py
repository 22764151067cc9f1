"""Device side of the pipeline.

Components for talking to a reMarkable over SSH/SFTP:
  - Session: command channel + file transfer
  - Deployment: agent install, update, verify, uninstall
  - Manager: owns the live session, reacts to presence events
"""
