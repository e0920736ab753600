"""Command line tool for flux-converge."""
