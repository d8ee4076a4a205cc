"""GitHub API access: the remote client and the named method catalog."""

from ghrelay.api.client import GitHubClient

__all__ = ["GitHubClient"]
