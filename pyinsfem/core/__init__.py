"""pyinsfem.core - mesh topology, degree-of-freedom numbering and constraints."""
