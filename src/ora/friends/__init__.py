"""Friend request state machine and presence."""
