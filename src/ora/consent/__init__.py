"""Server-side calendar consent flow."""
