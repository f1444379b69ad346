"""
casauth Test Suite

Test organization:
- unit/: Unit tests for individual modules, including end-to-end handshakes
  against a fake CAS server served through httpx.MockTransport
- property/: Property-based tests using Hypothesis
"""
