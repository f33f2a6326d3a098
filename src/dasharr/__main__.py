from dasharr.app import main

raise SystemExit(main())
