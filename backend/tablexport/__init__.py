"""TableXport billing API."""
