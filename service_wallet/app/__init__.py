"""
Wallet Service package for the ClawdBar access core.

- app.main: Application entrypoint that wires routes and lifecycle.
- app.chain: Polygon JSON-RPC client returning typed receipts.
- app.deposits: Receipt verification and the exactly-once crediting
  pipeline.

The service never holds private keys or sends transactions; it only reads
receipts.
"""
