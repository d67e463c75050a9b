"""Spreadsheet export of a session's attendance."""
import io
import re
from datetime import date, datetime
from typing import Iterable, List, Optional, Tuple

import pandas as pd

from tpo_attendance.services.geo_math import GeoMath

BASE_COLUMNS = ['S.No', 'Timestamp', 'Student Name', 'UID', 'Branch', 'Division', 'Batch', 'Room', 'Status']
LOCATION_COLUMNS = ['Campus Status', 'Distance (m)', 'Latitude', 'Longitude', 'Map Link']

COLUMN_WIDTHS = {
    'S.No': 6, 'Timestamp': 20, 'Student Name': 25, 'UID': 15, 'Branch': 30,
    'Division': 10, 'Batch': 10, 'Room': 10, 'Status': 10,
    'Campus Status': 14, 'Distance (m)': 12, 'Latitude': 12, 'Longitude': 12, 'Map Link': 45
}

XLSX_MIMETYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

def export_filename(session_label: str, on: Optional[date] = None) -> str:
    """``{label}_Attendance_{YYYY-MM-DD}.xlsx`` with whitespace runs as underscores."""
    on = on or datetime.utcnow().date()
    label = re.sub(r"\s+", "_", session_label)
    return f"{label}_Attendance_{on.isoformat()}.xlsx"

def format_timestamp(value) -> str:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value.strftime('%d %b %Y, %H:%M')

def build_rows(
    records: Iterable,
    location_aware: bool = False,
    reference: Optional[Tuple[float, float]] = None,
    campus_radius_meters: float = 200
) -> List[dict]:
    """Spreadsheet rows, one per record, in the order given."""
    rows = []
    for index, record in enumerate(records, start=1):
        row = {
            'S.No': index,
            'Timestamp': format_timestamp(record.recorded_at),
            'Student Name': record.student_name,
            'UID': record.uid,
            'Branch': record.branch,
            'Division': record.division,
            'Batch': record.batch,
            'Room': record.room,
            'Status': 'Present'
        }

        if location_aware:
            lat, lng = record.latitude, record.longitude
            if lat is None or lng is None:
                row.update({
                    'Campus Status': 'No Location',
                    'Distance (m)': None,
                    'Latitude': None,
                    'Longitude': None,
                    'Map Link': None
                })
            else:
                distance = GeoMath.distance_meters(lat, lng, reference[0], reference[1]) if reference else None
                if distance is None:
                    status = 'Unknown'
                else:
                    status = 'On Campus' if distance <= campus_radius_meters else 'Off Campus'
                row.update({
                    'Campus Status': status,
                    'Distance (m)': round(distance) if distance is not None else None,
                    'Latitude': round(lat, 6),
                    'Longitude': round(lng, 6),
                    'Map Link': f'https://www.google.com/maps?q={lat},{lng}'
                })

        rows.append(row)
    return rows

def export_attendance(
    records: Iterable,
    session_label: str,
    location_aware: bool = False,
    reference: Optional[Tuple[float, float]] = None,
    campus_radius_meters: float = 200,
    on: Optional[date] = None
) -> Tuple[str, bytes]:
    """Render the attendance sheet. Returns (filename, xlsx bytes)."""
    columns = BASE_COLUMNS + (LOCATION_COLUMNS if location_aware else [])
    rows = build_rows(records, location_aware, reference, campus_radius_meters)
    df = pd.DataFrame(rows, columns=columns)

    excel_buffer = io.BytesIO()
    with pd.ExcelWriter(excel_buffer, engine='openpyxl') as writer:
        df.to_excel(writer, sheet_name='Attendance', index=False)
        sheet = writer.sheets['Attendance']
        for position, column in enumerate(columns):
            letter = sheet.cell(row=1, column=position + 1).column_letter
            sheet.column_dimensions[letter].width = COLUMN_WIDTHS[column]

    return export_filename(session_label, on), excel_buffer.getvalue()
