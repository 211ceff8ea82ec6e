"""Referral and gamification engine for the feedback collection platform."""

__version__ = "0.1.0"
