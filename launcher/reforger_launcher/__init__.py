"""
reforger_launcher package
-------------------------
Arma Reforger dedicated server launcher for Linux / Docker environments.
Resolves workshop dependencies, synthesizes server.json per profile,
detects upstream drift and supervises the server process via API or CLI.
"""

__version__ = "0.4.0"
