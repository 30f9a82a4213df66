"""Small pure helpers: interpolation, logging setup."""
