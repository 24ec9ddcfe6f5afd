"""`smart-fhir` command line interface (requires the `cli` extra)."""
