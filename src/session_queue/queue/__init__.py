"""SQLite-backed job queue that runs agent CLI prompts one at a time.

Jobs are submitted from chat channels, executed serially by a single worker
through a provider CLI (claude, codex), and their outcome is delivered back
to the originating channel. The database row is the only record of a job:
a restart resumes pending work and fails jobs whose process cannot still be
alive.
"""
