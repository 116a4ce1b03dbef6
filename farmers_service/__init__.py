"""Farmers back-office service: bulk farmer onboarding pipeline."""
