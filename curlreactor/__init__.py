"""Drive libcurl's multi-socket interface from a single-threaded IOLoop."""

# version is a human-readable version number.

# version_info is a four-tuple for programmatic comparison. The first
# three numbers are the components of the version number.  The fourth
# is zero for an official release, positive for a development branch,
# or negative for a release candidate or beta (after the base version
# number has been incremented)
version = "1.0.0"
version_info = (1, 0, 0, 0)
