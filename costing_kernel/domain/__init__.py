"""Pure domain primitives shared by engines and services."""
