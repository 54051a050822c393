"""Live Activity push server for the YangcheonLife timetable app."""
