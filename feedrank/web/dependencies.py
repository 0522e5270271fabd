from fastapi import Request

from feedrank.service import FeedRankCore


def get_core(request: Request) -> FeedRankCore:
    return request.app.state.core
