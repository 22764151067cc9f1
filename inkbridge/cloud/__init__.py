"""Cloud notebook service client (OneNote over Microsoft Graph)."""
