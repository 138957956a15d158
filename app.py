#!/usr/bin/env python3

import logging

import uvicorn

from imagemin.app.core.config import settings

if __name__ == '__main__':
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    uvicorn.run('imagemin.app.main:app', host='0.0.0.0', port=8000, log_level=settings.LOG_LEVEL.lower())
