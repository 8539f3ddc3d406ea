"""
Code Deployer - continuous deployment daemon for git repositories.

Polls configured repositories, pulls new commits on each repository's
deployment branch, builds the project and runs its deployment actions,
keeping per-repository progress flags on disk between runs.
"""

__version__ = "1.0.0"
