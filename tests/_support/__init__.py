"""
Test support utilities for runwatch tests.

Helpers that don't fit as pytest fixtures but are useful across multiple
test files: a controllable clock, a sleep recorder and a scripted gateway.
"""

from .fakes import FakeClock, ScriptedGateway, SleepRecorder, make_record

__all__ = ["FakeClock", "ScriptedGateway", "SleepRecorder", "make_record"]
