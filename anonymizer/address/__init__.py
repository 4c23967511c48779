"""Address component detection, linking and scoring."""
