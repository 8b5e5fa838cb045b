"""Shared helpers for ssh_tunnels."""
