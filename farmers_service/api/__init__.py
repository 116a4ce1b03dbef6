"""HTTP layer for the bulk onboarding service."""
