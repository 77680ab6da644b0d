from pget.cli import main

raise SystemExit(main())
