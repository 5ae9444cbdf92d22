"""Built-in workers shipped with the engine."""
