#!/usr/bin/env python3
# -*- coding: utf-8 -*-
from __future__ import annotations

from lxc2vm.__main__ import main


if __name__ == "__main__":
    main()
