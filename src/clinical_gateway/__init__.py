"""Episode-of-care access control and clinical views over a FHIR store."""
