# Copyright (c) 2021 Pavel 'Blane' Tuchin
# This file is part of pacsnet, released under a modified MIT license.
#    See the file license.txt included with this distribution.

__version__ = '1.0.0'
