"""Pull request issue link checker."""
