#!/usr/bin/env python3
"""Import a browser-exported workout history into the Lauvit API.

The export is the JSON array the web app kept under ``Lauvit_workoutHistory``:
sessions with camelCase keys (date, workoutDay, loggedExercises[].exerciseName,
variation, sets[].reps/weight, notes). Older exports used ``variations``
instead of ``variation``; both are read.

Usage: python3 import_history.py <json_file> <api_url>
"""
import sys, json, math, requests
from time import sleep


def _parse_number(raw, cast):
    """Coerce a form value ("5", 5, "8.0", "", None) to int/float; None when unusable.

    Reps must be whole: 8.5 is dropped rather than truncated to 8.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    if cast is int:
        return int(value) if value.is_integer() else None
    return value


def _convert_exercise(ex: dict) -> dict | None:
    name = (ex.get('exerciseName') or '').strip()
    if not name:
        return None
    sets = []
    for s in ex.get('sets') or []:
        reps = _parse_number(s.get('reps'), int)
        weight = _parse_number(s.get('weight'), float)
        if reps is None or weight is None:
            continue
        sets.append({'reps': reps, 'weight': weight})
    if not sets:
        return None
    return {
        'exercise_name': name,
        'variation': ex.get('variation') or ex.get('variations') or None,
        'sets': sets,
        'notes': ex.get('notes') or None,
    }


def convert_session(raw: dict) -> dict | None:
    """Map one exported session to the /sessions payload; None if nothing loggable."""
    exercises = [e for e in (_convert_exercise(x) for x in raw.get('loggedExercises') or []) if e]
    if not raw.get('date') or not exercises:
        return None
    workout_day = raw.get('workoutDay')
    if workout_day == '_general_':
        workout_day = None
    return {
        'date': raw['date'],
        'workout_day': workout_day,
        'logged_exercises': exercises,
        'notes': raw.get('notes') or None,
    }


def import_history(json_file, api_url):
    if not api_url.startswith('http'):
        api_url = f'https://{api_url}'
    api_url = api_url.rstrip('/')

    print(f"Reading export: {json_file}")
    print(f"Target API: {api_url}")

    try:
        health = requests.get(f"{api_url}/health", timeout=10)
        health.raise_for_status()
        print(f"API is healthy\n")
    except Exception as e:
        print(f"Cannot connect: {e}")
        sys.exit(1)

    with open(json_file, 'r', encoding='utf-8') as f:
        raw_sessions = json.load(f)

    sessions = []
    skipped = 0
    for raw in raw_sessions:
        payload = convert_session(raw)
        if payload is None:
            skipped += 1
            continue
        sessions.append(payload)

    print(f"Found {len(sessions)} sessions ({skipped} skipped: no date or no sets)\n")

    success = 0
    failed = 0

    for i, payload in enumerate(sessions, 1):
        try:
            response = requests.post(
                f"{api_url}/sessions?force=true",
                json=payload, timeout=10,
            )
            response.raise_for_status()
            success += 1
            if i % 50 == 0:
                print(f"Progress: {i}/{len(sessions)}...")
        except Exception as e:
            failed += 1
            print(f"Failed session {i}: {e} ({payload['date']})")
            if failed > 50:
                print("Too many failures, stopping")
                break
        if i % 10 == 0:
            sleep(0.5)

    print(f"\n{'='*60}")
    print(f"Imported: {success}")
    print(f"Failed: {failed}")
    print(f"{'='*60}\n")

    try:
        dbinfo = requests.get(f"{api_url}/debug/dbinfo", timeout=10)
        info = dbinfo.json()
        print(f"Database now has: {info['session_rows']} sessions, {info['set_rows']} sets")
        print(f"Type: {info['db_type']}")
    except Exception as e:
        print(f"Could not verify: {e}")


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("Usage: python3 import_history.py <json_file> <api_url>")
        sys.exit(1)
    import_history(sys.argv[1], sys.argv[2])
