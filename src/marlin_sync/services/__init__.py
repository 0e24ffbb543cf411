"""Services for Marlin Sync."""
