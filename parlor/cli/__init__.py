"""CLI module for parlor."""
