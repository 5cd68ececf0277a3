"""SQLite storage for harness checkpoints, execution logs, and job journal."""
