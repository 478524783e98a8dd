"""Command-line entry points for goalsim."""
