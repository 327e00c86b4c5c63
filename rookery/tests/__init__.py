import io, logging, sys

# Use unittest's -v and -q flags to show/hide logging.
logging.basicConfig()
if '-v' in sys.argv:
  logging.getLogger().setLevel(logging.DEBUG)
elif 'discover' in sys.argv or '-q' in sys.argv or '--quiet' in sys.argv:
  # send logs nowhere instead of disabling them, so that log messages still get
  # formatted and raise the same exceptions they would if they were emitted.
  logging.getLogger().handlers[0].setStream(io.StringIO())
