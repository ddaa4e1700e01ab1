"""
Auth Service package for the ClawdBar access core.

This package issues agent API keys and resolves presented keys to
principals:

- app.main: Application entrypoint that wires routes and lifecycle.
- app.credentials: Key generation, bcrypt verifiers, prefix-narrowed
  validation and the ``X-Agent-Key`` transport dependency.

Design notes:
- Keep the package import side-effects minimal; module import must not
  perform network calls. All IO should happen in route handlers or
  explicit startup hooks.
- Use the shared/ utilities for logging, metrics, errors and storage.
- The plaintext key exists only in the registration response.
"""
