"""Application services built on the engine and the repositories."""
