"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the marketplace.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Funds are never created or destroyed by trading
2. atomicity.py - Funds and custody move together or not at all
3. idempotency.py - Fee and settlement payments are charged exactly once
4. state_machine.py - LISTED -> SOLD / CANCELED, terminal states are final
5. concurrency.py - One operation at a time, reentrant calls rejected

These tests use hypothesis for property-based testing.
"""
