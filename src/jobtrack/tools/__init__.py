"""Remote integrations used by the capture pipeline."""
