"""Pure launcher logic: command protocol, argument composition, output classification."""
