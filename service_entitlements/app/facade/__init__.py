"""Client facade package: per-session decisions and display fields."""
