"""Data models shared across KubeMend components."""
