"""Data models for teams, projects, assignments and link reports."""
