"""Appointment booking with EHR client synchronization."""
