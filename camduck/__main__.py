from camduck.daemon import main

raise SystemExit(main())
