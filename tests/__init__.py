"""
Test suite for the Clinic Back Office.

Contains unit tests for the scheduling engine and integration tests for
the appointment service and API.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
