import sys

from flurry_exporter.main import main

sys.exit(main())
