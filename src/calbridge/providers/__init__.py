"""Remote collaborators: the calendar gateway and the registry client."""
