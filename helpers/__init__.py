"""helpers — Standalone tools that sit next to the runner."""
