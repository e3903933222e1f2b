# src/mintkit/storage/__init__.py
"""
Content publication (off-ledger).

  pinata      pinning-provider client, failures normalized to UploadError
  gateways    concurrent, time-boxed gateway probing and resolution
  synthetic   offline identifiers for degraded publication
  publisher   ordered strategies plus bundle integrity checks
"""
