"""Runtime module - completion services and record stores."""
