"""Pure domain value objects for the settlement kernel.  ZERO I/O."""
