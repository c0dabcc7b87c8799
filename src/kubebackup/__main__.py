import sys

from kubebackup.main import main

sys.exit(main())
