"""ghrelay - a local daemon that relays GitHub GraphQL and REST calls."""

__version__ = "0.1.0"
