"""DOM selectors and in-page scripts for the two crawl targets.

Node reading happens in one ``page.evaluate`` round trip per pagination step;
the scripts return plain dicts that ``timeline`` and ``channel`` normalize.
"""

TIMELINE_SELECTORS = {
    "timeline_container": 'div[aria-label="Timeline: List"]',
    "post_container": 'article[data-testid="tweet"]',
    "post_text": '[data-testid="tweetText"]',
    "user_name": '[data-testid="User-Name"]',
    "publish_time": 'time[datetime]',
    "post_link": 'a[href*="/status/"]',
    "reply_count": '[data-testid="reply"] span',
    "repost_count": '[data-testid="retweet"] span',
    "like_count": '[data-testid="like"] span',
    "view_count": 'a[href*="/analytics"] span',
    "images": 'img[src*="pbs.twimg.com/media"]',
    "avatar": '[data-testid="Tweet-User-Avatar"] img',
    "video_player": '[data-testid="videoPlayer"], [data-testid="videoComponent"]',
    "social_context": '[data-testid="socialContext"]',
    "show_more": '[data-testid="tweet-text-show-more-link"]',
    "login_markers": '[data-testid="loginButton"], a[href="/login"], input[name="text"]',
}

CHANNEL_SELECTORS = {
    "video_container": 'ytd-rich-item-renderer, ytd-video-renderer, ytd-grid-video-renderer',
    "title_link": 'a#video-title-link, a#video-title, a[href*="/watch?v="]',
    "thumbnail": 'img',
    "duration": 'ytd-thumbnail-overlay-time-status-renderer, badge-shape .badge-shape-wiz__text',
    "metadata_line": '#metadata-line span, .inline-metadata-item',
    "channel_name": 'ytd-channel-name#channel-name yt-formatted-string, #channel-name #text',
    "contents": '#contents',
}

TARGET_HOSTS = {
    "timeline": ("x.com", "twitter.com"),
    "channel": ("youtube.com",),
}

LOGIN_URL_MARKERS = ("/login", "/i/flow/login", "/account/access")


SCRAPE_TIMELINE_JS = """
(sel) => {
  const text = (root, s) => { const el = root.querySelector(s); return el ? el.innerText.trim() : null; };
  return Array.from(document.querySelectorAll(sel.post_container)).map((article) => {
    const link = Array.from(article.querySelectorAll(sel.post_link))
      .map((a) => a.getAttribute('href'))
      .find((h) => h && /\\/status\\/\\d+$/.test(h.split('?')[0])) || null;
    const nameBlock = article.querySelector(sel.user_name);
    const nameSpans = nameBlock ? Array.from(nameBlock.querySelectorAll('span')).map((s) => s.innerText.trim()) : [];
    const handleLink = nameBlock ? nameBlock.querySelector('a[href^="/"]') : null;
    const time = article.querySelector(sel.publish_time);
    const avatar = article.querySelector(sel.avatar);
    const player = article.querySelector(sel.video_player);
    const poster = player ? (player.querySelector('video') || {}).poster || null : null;
    const social = text(article, sel.social_context) || '';
    return {
      href: link,
      text: text(article, sel.post_text) || '',
      author_name: nameSpans.length ? nameSpans[0] : null,
      author_href: handleLink ? handleLink.getAttribute('href') : null,
      author_avatar: avatar ? avatar.src : null,
      published_at: time ? time.getAttribute('datetime') : null,
      reply: text(article, sel.reply_count),
      repost: text(article, sel.repost_count),
      like: text(article, sel.like_count),
      views: text(article, sel.view_count),
      images: Array.from(article.querySelectorAll(sel.images)).map((img) => img.src),
      has_video: !!player,
      video_poster: poster,
      social_context: social,
      is_reply: /Replying to/i.test(article.innerText.slice(0, 400)),
      truncated: !!article.querySelector(sel.show_more),
    };
  });
}
"""

SCRAPE_CHANNEL_JS = """
(sel) => {
  const channelEl = document.querySelector(sel.channel_name);
  const items = Array.from(document.querySelectorAll(sel.video_container)).map((node) => {
    const link = node.querySelector(sel.title_link);
    const thumb = node.querySelector(sel.thumbnail);
    const duration = node.querySelector(sel.duration);
    return {
      href: link ? link.getAttribute('href') : null,
      title: link ? (link.getAttribute('title') || link.innerText || '').trim() : '',
      thumbnail: thumb ? (thumb.src || thumb.getAttribute('src')) : null,
      duration: duration ? duration.innerText.trim() : null,
      metadata: Array.from(node.querySelectorAll(sel.metadata_line)).map((s) => s.innerText.trim()),
      class_name: (node.querySelector('[class*="content-id-"]') || {}).className || '',
    };
  });
  return { channel_name: channelEl ? channelEl.innerText.trim() : null, items };
}
"""

SCROLL_JS = """
(factor) => {
  const before = window.scrollY;
  window.scrollBy(0, Math.round(window.innerHeight * factor));
  return window.scrollY - before;
}
"""

ELEMENT_PRESENT_JS = "(selector) => !!document.querySelector(selector)"
