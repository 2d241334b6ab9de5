"""
Scheduling Domain

Time rules and one-shot mechanics shared by the appointment and quote
workflows.

Structure:
```
fieldbook/domain/scheduling/
├── __init__.py
├── schemas.py         # ActionToken, Reminder, TargetType, TokenAction
├── time_windows.py    # Slot grid, booking horizon, local-time conversion
├── token_service.py   # Action token minting, verification, pair consumption
├── reminders.py       # Reminder derivation and the periodic sweep
└── repository.py      # SQL-backed token store and reminder repository
```

SLOT RULES:
- 30-minute grid, 08:00-11:30 and 14:00-17:00 local wall-clock time
- Evaluated in the requester's IANA timezone, stored as UTC instants
- Bookable from now + 1 day up to now + 1 month (local calendar)
"""
