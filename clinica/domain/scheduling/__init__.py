"""
Scheduling Domain

Appointment booking, rescheduling and cancellation for clinic doctors, plus
doctor and branch availability.

Structure:
```
clinica/domain/scheduling/
├── __init__.py
├── schemas.py     # Request/response schemas, business and operating hours
├── slots.py       # Time arithmetic and slot generation
├── conflicts.py   # Interval overlap detection
├── locks.py       # Per doctor/day write serialisation
├── repository.py  # Appointment store (SQLAlchemy + in-memory)
├── directory.py   # Doctor/branch lookups
├── service.py     # SchedulingService orchestration
├── errors.py      # Error taxonomy
└── router.py      # FastAPI endpoints
```
"""
