"""PlayStation trophy tracking bot for Discord."""
