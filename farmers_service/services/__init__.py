"""Business services for the bulk farmer onboarding pipeline."""
