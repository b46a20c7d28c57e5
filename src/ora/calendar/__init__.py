"""Calendar availability, conflict detection, token lifecycle and sync."""
