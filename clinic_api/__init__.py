"""
Clinic Back Office

FastAPI service for a clinic's back office, built around the appointment
slot-allocation and lifecycle engine: booking, rescheduling, cancellation
and sweeping of missed appointments.
"""

__version__ = "1.0.0"
