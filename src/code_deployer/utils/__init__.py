"""Shared helpers for Code Deployer."""
