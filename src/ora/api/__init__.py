"""HTTP API for consent callbacks and the sync sweep."""
