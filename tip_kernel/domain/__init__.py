"""Pure domain layer: enums, value helpers, DTOs and split computation.

Nothing in this package touches the database or the wall clock.
"""
