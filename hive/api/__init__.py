"""HTTP surface: per-session orchestration and the Starlette app."""
