"""Command line actions for kots-local."""
