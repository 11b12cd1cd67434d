"""Face recall: remember the people you meet from the photos you take."""
