"""timekeeperctl: command-line client of the Timekeeper daemon."""
